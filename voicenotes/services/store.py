# voicenotes/services/store.py
from typing import Optional

from sqlmodel import select

from ..db import get_session
from ..models import Summary, Transcript, utcnow
from .summarizer import SummaryPayload

def insert_transcript(recording_id: str, text: str, confidence: Optional[float] = None) -> Transcript:
    row = Transcript(recording_id=recording_id, text=text, confidence=confidence)
    with get_session() as s:
        s.add(row)
        s.commit()
        s.refresh(row)
    return row

def latest_transcript(recording_id: str) -> Optional[Transcript]:
    with get_session() as s:
        return s.exec(
            select(Transcript)
            .where(Transcript.recording_id == recording_id)
            .order_by(Transcript.created_at.desc(), Transcript.id.desc())
        ).first()

def _apply(row: Summary, payload: SummaryPayload, style_key: Optional[str]) -> Summary:
    row.title = payload.title
    row.summary = payload.summary
    row.bullets = list(payload.bullets)
    row.action_items = list(payload.action_items)
    row.tags = list(payload.tags)
    row.confidence = payload.confidence
    row.summary_style_key = style_key
    return row

def insert_summary(recording_id: str, payload: SummaryPayload, style_key: Optional[str] = None) -> Summary:
    """Append a new summary row (run-pipeline and webhook paths)."""
    row = _apply(Summary(recording_id=recording_id), payload, style_key)
    with get_session() as s:
        s.add(row)
        s.commit()
        s.refresh(row)
    return row

def upsert_summary(recording_id: str, payload: SummaryPayload, style_key: Optional[str] = None) -> Summary:
    """Replace the recording's latest summary in place, or insert one."""
    with get_session() as s:
        row = s.exec(
            select(Summary)
            .where(Summary.recording_id == recording_id)
            .order_by(Summary.created_at.desc(), Summary.id.desc())
        ).first()
        if row is None:
            row = Summary(recording_id=recording_id)
        else:
            row.created_at = utcnow()
        _apply(row, payload, style_key)
        s.add(row)
        s.commit()
        s.refresh(row)
    return row

def latest_summary(recording_id: str) -> Optional[Summary]:
    with get_session() as s:
        return s.exec(
            select(Summary)
            .where(Summary.recording_id == recording_id)
            .order_by(Summary.created_at.desc(), Summary.id.desc())
        ).first()
