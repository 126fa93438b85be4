# voicenotes/services/transcode.py
from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..config import get_settings
from ..db import get_session
from ..errors import RecordingNotFound
from ..models import Recording, RecordingStatus, utcnow
from ..tracing import TraceContext

logger = logging.getLogger(__name__)

def original_format(storage_path: Optional[str]) -> str:
    parts = (storage_path or "").rsplit(".", 1)
    return parts[1] if len(parts) == 2 and parts[1] else "unknown"

def mark_transcode_required(recording_id: str, storage_path: str, fmt: str, ctx: TraceContext) -> None:
    """The fallback collaborator itself: record why the recording stopped."""
    logger.info(
        f"[transcode_fallback] transcode needed recording_id={recording_id} "
        f"storage_path={storage_path} format={fmt} trace={ctx}"
    )
    with get_session() as s:
        rec = s.get(Recording, recording_id)
        if not rec:
            raise RecordingNotFound(f"Recording not found with id: {recording_id}")
        rec.status = RecordingStatus.ERROR.value
        rec.status_changed_at = utcnow()
        rec.last_error = f"Unsupported format: {fmt}. Transcode required."
        s.add(rec)
        s.commit()

async def trigger_fallback_transcode(recording_id: str, storage_path: str, ctx: TraceContext,
                                     client: Optional[httpx.AsyncClient] = None) -> None:
    """Fire the fallback request. Raises on failure; callers log and move on."""
    settings = get_settings()
    fmt = original_format(storage_path)

    if not settings.transcode_fallback_url:
        mark_transcode_required(recording_id, storage_path, fmt, ctx)
        return

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=30)
    try:
        r = await client.post(
            settings.transcode_fallback_url,
            headers={"X-Service-Token": settings.service_token, "x-trace-id": ctx.trace_id},
            json={
                "recording_id": recording_id,
                "storage_path": storage_path,
                "original_format": fmt,
                "trace_id": ctx.trace_id,
            },
        )
        if r.status_code >= 300:
            raise RuntimeError(f"Transcode fallback failed: {r.status_code} {r.text}")
        logger.info(f"[pipeline] fallback transcode triggered recording_id={recording_id} trace={ctx}")
    finally:
        if owns_client:
            await client.aclose()
