# voicenotes/services/pipeline.py
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

from ..config import get_settings
from ..db import get_session
from ..errors import (
    InvalidEmail,
    InvalidPath,
    MissingParams,
    PipelineError,
    RecordingLookupFailed,
    RecordingNotFound,
)
from ..models import Recording, RecordingStatus, RunLog
from ..security import Caller
from ..tracing import TraceContext, ms_since
from ..utils.storage import create_signed_url, normalize_storage_path, split_storage_path
from .emailer import compose_summary_email, is_valid_email, send_summary_email
from .status import create_pipeline_run, mark_error, set_status
from .store import insert_summary, insert_transcript
from .summarizer import DEFAULT_STYLE, resolve_style_key, summarize_long
from .transcriber import transcribe

logger = logging.getLogger(__name__)

def _pick(body: dict, *keys):
    for k in keys:
        v = body.get(k)
        if v is not None and (not isinstance(v, str) or v.strip()):
            return v.strip() if isinstance(v, str) else v
    return None

@dataclass(frozen=True)
class RunRequest:
    recording_id: Optional[str]
    storage_path: Optional[str] = None
    notify_email: Optional[str] = None
    summary_style_key: str = DEFAULT_STYLE
    run_id: Optional[str] = None

    @classmethod
    def from_body(cls, body: dict) -> "RunRequest":
        """Accepts both snake_case and camelCase keys."""
        body = body or {}
        return cls(
            recording_id=_pick(body, "recording_id", "recordingId"),
            storage_path=_pick(body, "storage_path", "storagePath"),
            notify_email=_pick(body, "notify_email", "notifyEmail", "email"),
            summary_style_key=resolve_style_key(body),
            run_id=_pick(body, "run_id", "runId"),
        )

# ---------- Helpers ----------

@contextmanager
def _step(name: str, ctx: TraceContext, timings: Optional[dict] = None):
    t0 = time.perf_counter()
    logger.info(f"step:{name} start trace={ctx}")
    try:
        yield
    except Exception as e:
        logger.error(f"step:{name} fail ms={ms_since(t0)} trace={ctx} error={e}")
        raise
    elapsed = ms_since(t0)
    if timings is not None:
        timings[name] = elapsed
    logger.info(f"step:{name} ok ms={elapsed} trace={ctx}")

def load_owned_recording(recording_id: str, caller: Caller) -> Recording:
    """Recordings owned by someone else are reported as missing."""
    try:
        with get_session() as s:
            rec = s.get(Recording, recording_id)
    except SQLAlchemyError as e:
        raise RecordingLookupFailed(f"Recording lookup failed: {e}") from e
    if not rec or rec.user_id != caller.id:
        raise RecordingNotFound(f"Recording not found with id: {recording_id}")
    return rec

def resolve_object_path(requested: Optional[str], rec: Recording) -> tuple[str, str]:
    """Self-heal a missing path from the recording, normalize, and split into (path, object name)."""
    settings = get_settings()
    path = normalize_storage_path(requested or rec.storage_path, settings.recordings_bucket)
    if not path:
        raise MissingParams("Missing storage_path and it could not be resolved from the recording")
    bucket, object_name = split_storage_path(path)
    if bucket != settings.recordings_bucket or not object_name:
        raise InvalidPath(f"Invalid storage path: {path}")
    return path, object_name

def _write_run_log(log: RunLog) -> None:
    try:
        with get_session() as s:
            s.add(log)
            s.commit()
    except SQLAlchemyError as e:
        logger.warning(f"[pipeline] run log write failed trace={log.trace_id} error={e!r}")

# ---------- Orchestrator ----------

async def run_pipeline(req: RunRequest, caller: Caller, ctx: TraceContext, *,
                       http: Optional[httpx.AsyncClient] = None) -> dict:
    """
    recording -> run record -> uploading -> transcribing -> signed URL -> transcript
    -> summarizing -> summary -> ready -> optional email.
    Every run, successful or not, leaves a RunLog row behind.
    """
    t0 = time.perf_counter()
    timings: dict = {}
    log = RunLog(user_id=caller.id, recording_id=req.recording_id, trace_id=ctx.trace_id)
    try:
        result = await _run(req, caller, ctx, timings, log, http)
        if log.status_tag == "ok" and log.email_upstream_status == 409:
            log.status_tag = "duplicate"
        return result
    except PipelineError as e:
        log.status_tag = e.code
        raise
    except Exception:
        log.status_tag = "unhandled"
        raise
    finally:
        log.t_total_ms = ms_since(t0)
        log.t_transcribe_ms = timings.get("transcribe")
        log.t_summarize_ms = timings.get("summarize")
        log.t_email_ms = timings.get("email")
        _write_run_log(log)
        logger.info(f"[pipeline] done status={log.status_tag} total_ms={log.t_total_ms} trace={ctx}")

async def _run(req: RunRequest, caller: Caller, ctx: TraceContext, timings: dict,
               log: RunLog, http: Optional[httpx.AsyncClient]) -> dict:
    if not req.recording_id:
        raise MissingParams("Missing recording_id")

    with _step("verify_recording", ctx):
        rec = load_owned_recording(req.recording_id, caller)
    storage_path, object_name = resolve_object_path(req.storage_path, rec)
    ctx = ctx.with_(recording_id=rec.id)
    log.audio_url = storage_path

    with _step("create_run", ctx):
        run = create_pipeline_run(rec.id, caller.id, ctx)
    ctx = ctx.with_(run_id=run.id)
    log.pipeline_run_id = run.id

    set_status(rec.id, RecordingStatus.UPLOADING, ctx)
    set_status(rec.id, RecordingStatus.TRANSCRIBING, ctx)

    try:
        with _step("sign_url", ctx):
            signed_url = create_signed_url(object_name)

        with _step("transcribe", ctx, timings):
            tr = await transcribe(signed_url, ctx, recording_id=rec.id, storage_path=storage_path, client=http)
        insert_transcript(rec.id, tr.transcript, tr.confidence)
        log.transcript_len = len(tr.transcript)

        set_status(rec.id, RecordingStatus.SUMMARIZING, ctx)
        with _step("summarize", ctx, timings):
            summary = await summarize_long(tr.transcript, ctx, req.summary_style_key)
        insert_summary(rec.id, summary, req.summary_style_key)
        log.summary_len = len(summary.summary)

        set_status(rec.id, RecordingStatus.READY, ctx)
    except PipelineError as e:
        mark_error(rec.id, e.message, ctx)
        raise
    except Exception as e:
        mark_error(rec.id, str(e) or e.__class__.__name__, ctx)
        raise

    result = {"traceId": ctx.trace_id, "recordingId": rec.id, "runId": run.id}

    to_email = req.notify_email or caller.email
    if not to_email:
        return result

    # Validated only now, after the recording is already ready.
    if not is_valid_email(to_email):
        raise InvalidEmail(f"Invalid email address: {to_email}")

    message = compose_summary_email(summary, ctx.trace_id)
    log.email_to = to_email
    log.email_subject = message.subject
    log.idempotency_key = f"sv-email-{ctx.trace_id}"
    try:
        with _step("email", ctx, timings):
            sent = await send_summary_email(to_email, message, ctx, client=http)
    except Exception as e:
        log.email_upstream_status = getattr(e, "upstream_status", None)
        log.status_tag = "email_failed"
        logger.warning(f"[pipeline] email send failed; run still succeeds trace={ctx} error={e}")
        return result

    log.email_upstream_status = sent.upstream_status
    log.email_id = sent.message_id
    if sent.message_id:
        result["messageId"] = sent.message_id
    return result
