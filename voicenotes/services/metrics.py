# voicenotes/services/metrics.py
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from sqlmodel import and_, or_, select

from ..db import get_session
from ..models import RunLog, as_utc, utcnow

logger = logging.getLogger(__name__)

RUN_FIELDS = (
    "id", "created_at", "audio_url", "email_to", "email_subject", "transcript_len",
    "summary_len", "email_upstream_status", "email_id", "idempotency_key", "status_tag",
)

def clamp(value: Optional[int], default: int, lo: int, hi: int) -> int:
    if value is None:
        return default
    return max(lo, min(hi, int(value)))

def parse_since(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 (a trailing Z is accepted) -> aware UTC; None when unparsable."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

def _iso(dt: Optional[datetime]) -> Optional[str]:
    if not dt:
        return None
    return as_utc(dt).astimezone(timezone.utc).isoformat().replace("+00:00", "Z")

def pct(sorted_values: List[int], p: float) -> Optional[int]:
    """Nearest-rank-below percentile on an ascending list."""
    if not sorted_values:
        return None
    i = min(len(sorted_values) - 1, max(0, math.floor((p / 100) * (len(sorted_values) - 1))))
    return sorted_values[i]

def _avg(values: List[int]) -> Optional[int]:
    return round(sum(values) / len(values)) if values else None

def _present(rows: Iterable[RunLog], field: str) -> List[int]:
    return [getattr(r, field) for r in rows if isinstance(getattr(r, field), int)]

def serialize_run(run: RunLog) -> dict:
    out = {f: getattr(run, f) for f in RUN_FIELDS}
    out["created_at"] = _iso(run.created_at)
    return out

def compute_metrics(user_id: str, hours: Optional[int] = None, limit: Optional[int] = None,
                    since: Optional[str] = None) -> dict:
    hours = clamp(hours, 168, 1, 24 * 30)
    limit = clamp(limit, 1000, 1, 5000)
    until = utcnow()
    since_dt = parse_since(since) or (until - timedelta(hours=hours))

    with get_session() as s:
        rows = s.exec(
            select(RunLog)
            .where(RunLog.user_id == user_id, RunLog.created_at >= since_dt)
            .order_by(RunLog.created_at.desc())
            .limit(limit)
        ).all()

    total = len(rows)
    sent_200 = sum(1 for r in rows if r.email_upstream_status == 200)
    dup_409 = sum(1 for r in rows if r.email_upstream_status == 409)
    success = sent_200 + dup_409
    totals = sorted(_present(rows, "t_total_ms"))

    logger.info(f"[metrics] user={user_id} total={total} success={success} fail={total - success}")
    return {
        "window": {"since": _iso(since_dt), "until": _iso(until), "hours": hours, "limit": limit},
        "counts": {
            "total": total,
            "success": success,
            "fail": total - success,
            "sent_200": sent_200,
            "duplicate_409": dup_409,
        },
        "success_rate": (success / total) if total else None,
        "t_total_ms": {
            "avg": _avg(totals),
            "p50": pct(totals, 50),
            "p90": pct(totals, 90),
            "p95": pct(totals, 95),
            "max": max(totals) if totals else None,
        },
        "stages_avg_ms": {
            "transcribe": _avg(_present(rows, "t_transcribe_ms")),
            "summarize": _avg(_present(rows, "t_summarize_ms")),
            "email": _avg(_present(rows, "t_email_ms")),
        },
        "last_run_at": _iso(rows[0].created_at) if rows else None,
    }

def encode_cursor(run: RunLog) -> str:
    return f"{_iso(run.created_at)}|{run.id}"

def decode_cursor(cursor: Optional[str]) -> tuple[Optional[datetime], Optional[str]]:
    stamp, _, run_id = (cursor or "").partition("|")
    return parse_since(stamp), run_id or None

def list_runs(user_id: str, limit: Optional[int] = None, cursor: Optional[str] = None) -> dict:
    """Newest first, ties broken by id; `cursor` is `<created_at>|<id>` of the last item of the previous page."""
    limit = clamp(limit, 20, 1, 50)
    q = select(RunLog).where(RunLog.user_id == user_id)
    cursor_dt, cursor_id = decode_cursor(cursor)
    if cursor_dt is not None and cursor_id:
        q = q.where(or_(RunLog.created_at < cursor_dt,
                        and_(RunLog.created_at == cursor_dt, RunLog.id < cursor_id)))
    elif cursor_dt is not None:
        q = q.where(RunLog.created_at < cursor_dt)
    with get_session() as s:
        rows = s.exec(q.order_by(RunLog.created_at.desc(), RunLog.id.desc()).limit(limit)).all()

    items = [serialize_run(r) for r in rows]
    next_cursor = encode_cursor(rows[-1]) if len(rows) == limit else None
    return {"items": items, "next_cursor": next_cursor}

def get_run(user_id: str, run_id: str) -> Optional[dict]:
    with get_session() as s:
        run = s.get(RunLog, run_id)
    if not run or run.user_id != user_id:
        return None
    return serialize_run(run)

def delete_run(user_id: str, run_id: str) -> bool:
    with get_session() as s:
        run = s.get(RunLog, run_id)
        if not run or run.user_id != user_id:
            return False
        s.delete(run)
        s.commit()
    logger.info(f"[metrics] run deleted id={run_id} user={user_id}")
    return True
