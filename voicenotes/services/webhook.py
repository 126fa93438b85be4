# voicenotes/services/webhook.py
from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..config import get_settings
from ..db import get_session
from ..errors import MissingParams, PipelineError
from ..models import Recording, RecordingStatus, TranscriptJob, utcnow
from ..security import Caller
from ..tracing import TraceContext
from ..utils.storage import create_signed_url
from .pipeline import load_owned_recording, resolve_object_path
from .status import mark_error, set_status
from .store import insert_summary, insert_transcript
from .summarizer import DEFAULT_STYLE, summarize_long
from .transcriber import MIN_TRANSCRIPT_CHARS, extract_transcript, submit_job

logger = logging.getLogger(__name__)

def _set_job(job_id: str, status: str, error: Optional[str] = None) -> None:
    with get_session() as s:
        job = s.get(TranscriptJob, job_id)
        if not job:
            return
        job.status = status
        job.error = error
        job.updated_at = utcnow()
        s.add(job)
        s.commit()

async def submit_async_transcription(recording_id: str, caller: Caller, ctx: TraceContext, *,
                                     http: Optional[httpx.AsyncClient] = None) -> dict:
    """Kick off a callback-mode transcription; /provider-webhook finishes the run."""
    settings = get_settings()
    rec = load_owned_recording(recording_id, caller)
    _, object_name = resolve_object_path(None, rec)
    ctx = ctx.with_(recording_id=rec.id)

    callback = settings.deepgram_callback_url or f"{settings.base_url.rstrip('/')}/provider-webhook"
    signed_url = create_signed_url(object_name)
    job_id = await submit_job(signed_url, callback, ctx, client=http)

    with get_session() as s:
        s.add(TranscriptJob(job_id=job_id, recording_id=rec.id, status="processing"))
        s.commit()
    set_status(rec.id, RecordingStatus.TRANSCRIBING, ctx)
    return {"jobId": job_id, "recordingId": rec.id, "traceId": ctx.trace_id}

async def handle_provider_callback(payload: dict, ctx: TraceContext) -> dict:
    """
    Provider completion callback. Returns the ack body (without trace).
    A job already marked completed is acknowledged with no side effects.
    Business failures (failed job, empty transcript) are acknowledged too.
    """
    payload = payload or {}
    job_id = payload.get("job_id") or payload.get("jobId") or (payload.get("metadata") or {}).get("request_id")
    if not job_id:
        raise MissingParams("Missing job_id in webhook payload", code="missing_job_id")

    status = payload.get("status")
    if not status and payload.get("results"):
        status = "completed"
    logger.info(f"[webhook] received job_id={job_id} status={status} has_results={bool(payload.get('results'))} trace={ctx}")

    with get_session() as s:
        job = s.get(TranscriptJob, job_id)

    if job and job.status == "completed":
        logger.info(f"[webhook] already processed job_id={job_id} trace={ctx}")
        return {"ok": True, "message": "Already processed"}

    if not job:
        logger.warning(f"[webhook] unknown job_id={job_id} trace={ctx}")
        return {"ok": True, "message": "Unknown job"}

    recording_id = job.recording_id
    ctx = ctx.with_(recording_id=recording_id)

    if status not in ("completed", "failed"):
        return {"ok": True}

    with get_session() as s:
        rec = s.get(Recording, recording_id)
    if not rec:
        logger.warning(f"[webhook] recording missing job_id={job_id} recording_id={recording_id} trace={ctx}")
        _set_job(job_id, "failed", "recording_missing")
        return {"ok": True, "message": "Recording not found"}

    if status == "failed":
        err = str(payload.get("error") or "Transcription job failed")
        set_status(recording_id, RecordingStatus.ERROR, ctx, last_error=err)
        _set_job(job_id, "failed", err)
        return {"ok": True, "message": "Job failed, status updated"}

    transcript, confidence = extract_transcript(payload.get("results"))
    if len(transcript) < MIN_TRANSCRIPT_CHARS:
        logger.info(f"[webhook] empty transcript job_id={job_id} trace={ctx}")
        set_status(recording_id, RecordingStatus.ERROR, ctx, last_error="Empty transcript")
        _set_job(job_id, "failed", "empty_transcript")
        return {"ok": True, "message": "Empty transcript, status updated"}

    # job stays processing on failure so a provider retry can finish it
    try:
        insert_transcript(recording_id, transcript, confidence or 0.0)
        set_status(recording_id, RecordingStatus.SUMMARIZING, ctx)
        summary = await summarize_long(transcript, ctx, DEFAULT_STYLE)
        insert_summary(recording_id, summary, DEFAULT_STYLE)
        set_status(recording_id, RecordingStatus.READY, ctx)
        _set_job(job_id, "completed")
    except PipelineError as e:
        mark_error(recording_id, e.message, ctx)
        raise
    except Exception as e:
        mark_error(recording_id, str(e) or e.__class__.__name__, ctx)
        raise
    logger.info(f"[webhook] completed job_id={job_id} recording_id={recording_id} trace={ctx}")
    return {"ok": True}
