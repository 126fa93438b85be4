# voicenotes/services/status.py
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from ..db import get_session
from ..errors import RecordingNotFound, StatusWriteError
from ..models import PipelineRun, Recording, RecordingStatus, utcnow
from ..tracing import TraceContext

logger = logging.getLogger(__name__)

# ---------- Progress table ----------

STEP = {
    RecordingStatus.UPLOADING: 1,
    RecordingStatus.TRANSCRIBING: 2,
    RecordingStatus.SUMMARIZING: 4,
    RecordingStatus.READY: 5,
    RecordingStatus.ERROR: 99,
}

PROGRESS = {
    RecordingStatus.UPLOADING: 0.15,
    RecordingStatus.TRANSCRIBING: 0.45,
    RecordingStatus.SUMMARIZING: 0.75,
    RecordingStatus.READY: 1.0,
    RecordingStatus.ERROR: 0.0,
}

def create_pipeline_run(recording_id: str, user_id: Optional[str], ctx: TraceContext) -> PipelineRun:
    run = PipelineRun(recording_id=recording_id, user_id=user_id, stage="queued",
                      progress=0.0, step=0, trace_id=ctx.trace_id)
    with get_session() as s:
        s.add(run)
        s.commit()
        s.refresh(run)
    logger.info(f"[status] run created run_id={run.id} recording_id={recording_id} trace={ctx}")
    return run

def _mirror_run(recording_id: str, stage: str, step: int, progress: float, ctx: TraceContext) -> None:
    """Update the latest PipelineRun for the recording. Failures only warn."""
    try:
        with get_session() as s:
            run = s.exec(
                select(PipelineRun)
                .where(PipelineRun.recording_id == recording_id)
                .order_by(PipelineRun.created_at.desc())
            ).first()
            if not run:
                return
            run.stage = stage
            run.step = step
            run.progress = progress
            run.updated_at = utcnow()
            s.add(run)
            s.commit()
    except SQLAlchemyError as e:
        logger.warning(f"[status] pipeline_runs mirror failed recording_id={recording_id} trace={ctx} error={e!r}")

def set_status(recording_id: str, status: RecordingStatus | str, ctx: TraceContext, *,
               step: Optional[int] = None, progress: Optional[float] = None,
               last_error: Optional[str] = None) -> Recording:
    """
    Move a recording to `status`. The recording row is authoritative: failing to
    write it raises StatusWriteError. The run mirror is best-effort.
    """
    status = RecordingStatus(status)
    step = STEP[status] if step is None else step
    progress = PROGRESS[status] if progress is None else progress

    try:
        with get_session() as s:
            rec = s.get(Recording, recording_id)
            if not rec:
                raise RecordingNotFound(f"Recording not found with id: {recording_id}")
            rec.status = status.value
            rec.status_changed_at = utcnow()
            if last_error is not None:
                rec.last_error = last_error[:2000]
            elif status is not RecordingStatus.ERROR:
                rec.last_error = None
            s.add(rec)
            s.commit()
    except SQLAlchemyError as e:
        raise StatusWriteError(f"Failed to update recording status: {e}") from e

    logger.info(f"[status] {recording_id} -> {status.value} step={step} progress={progress} trace={ctx}")
    _mirror_run(recording_id, status.value, step, progress, ctx)
    return rec

def mark_error(recording_id: str, message: str, ctx: TraceContext) -> None:
    """Best-effort error marking used on failure paths; never raises."""
    try:
        set_status(recording_id, RecordingStatus.ERROR, ctx, last_error=message)
    except Exception as e:
        logger.error(f"[status] could not mark error recording_id={recording_id} trace={ctx} error={e!r}")
