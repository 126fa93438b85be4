# voicenotes/routers/pipeline.py
from typing import Optional

from fastapi import APIRouter, Body, Depends, Header

from ..errors import MissingParams, NoTranscript
from ..models import RecordingStatus
from ..security import Caller, require_service_token, require_user, require_webhook_secret
from ..services import webhook
from ..services.pipeline import RunRequest, load_owned_recording, run_pipeline
from ..services.status import mark_error, set_status
from ..services.store import latest_transcript, upsert_summary
from ..services.summarizer import resolve_style_key, summarize_long
from ..services.transcode import mark_transcode_required, original_format
from ..tracing import TraceContext
from .common import body_trace, error_response

router = APIRouter(tags=["pipeline"])

@router.post("/run-pipeline")
async def run_pipeline_route(
    body: dict = Body(default={}),
    x_trace_id: Optional[str] = Header(default=None, alias="X-Trace-Id"),
    caller: Caller = Depends(require_user),
):
    ctx = TraceContext.resolve(body_trace(body), x_trace_id)
    try:
        out = await run_pipeline(RunRequest.from_body(body), caller, ctx)
    except Exception as e:
        return error_response(e, ctx)

    resp = {"ok": True, "trace": ctx.trace_id, "recording_id": out["recordingId"], "runId": out["runId"]}
    if out.get("messageId"):
        resp["messageId"] = out["messageId"]
    return resp

@router.post("/provider-webhook", dependencies=[Depends(require_webhook_secret)])
async def provider_webhook(
    body: dict = Body(default={}),
    x_trace_id: Optional[str] = Header(default=None, alias="X-Trace-Id"),
):
    ctx = TraceContext.resolve(None, x_trace_id)
    try:
        ack = await webhook.handle_provider_callback(body, ctx)
    except Exception as e:
        return error_response(e, ctx)
    return {**ack, "trace": ctx.trace_id}

@router.post("/transcode-fallback", dependencies=[Depends(require_service_token)])
async def transcode_fallback(
    body: dict = Body(default={}),
    x_trace_id: Optional[str] = Header(default=None, alias="X-Trace-Id"),
):
    ctx = TraceContext.resolve(body_trace(body), x_trace_id)
    recording_id = body.get("recording_id")
    storage_path = body.get("storage_path")
    try:
        if not recording_id or not storage_path:
            raise MissingParams("Missing recording_id or storage_path")
        fmt = body.get("original_format") or original_format(storage_path)
        mark_transcode_required(recording_id, storage_path, fmt, ctx.with_(recording_id=recording_id))
    except Exception as e:
        return error_response(e, ctx)
    return {"ok": True, "message": "Transcode fallback recorded", "trace": ctx.trace_id}

@router.post("/recordings/{recording_id}/transcribe-async")
async def transcribe_async(
    recording_id: str,
    x_trace_id: Optional[str] = Header(default=None, alias="X-Trace-Id"),
    caller: Caller = Depends(require_user),
):
    ctx = TraceContext.resolve(None, x_trace_id)
    try:
        out = await webhook.submit_async_transcription(recording_id, caller, ctx)
    except Exception as e:
        return error_response(e, ctx)
    return {"ok": True, "trace": ctx.trace_id, "recording_id": out["recordingId"], "jobId": out["jobId"]}

@router.post("/recordings/{recording_id}/summarize")
async def summarize_recording(
    recording_id: str,
    body: dict = Body(default={}),
    x_trace_id: Optional[str] = Header(default=None, alias="X-Trace-Id"),
    caller: Caller = Depends(require_user),
):
    """Summarize the latest transcript and replace the recording's summary."""
    ctx = TraceContext.resolve(body_trace(body), x_trace_id).with_(recording_id=recording_id)
    style_key = resolve_style_key(body)
    try:
        load_owned_recording(recording_id, caller)
        transcript = latest_transcript(recording_id)
        if not transcript or not transcript.text.strip():
            raise NoTranscript(f"No transcript for recording {recording_id}")

        set_status(recording_id, RecordingStatus.SUMMARIZING, ctx)
        try:
            summary = await summarize_long(transcript.text, ctx, style_key)
            row = upsert_summary(recording_id, summary, style_key)
            set_status(recording_id, RecordingStatus.READY, ctx)
        except Exception as e:
            mark_error(recording_id, str(e) or e.__class__.__name__, ctx)
            raise
    except Exception as e:
        return error_response(e, ctx)

    return {
        "ok": True,
        "trace": ctx.trace_id,
        "recording_id": recording_id,
        "summary": {**summary.model_dump(), "id": row.id, "summary_style_key": style_key},
    }
