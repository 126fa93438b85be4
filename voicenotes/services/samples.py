# voicenotes/services/samples.py
from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from ..config import get_settings
from ..db import get_session
from ..errors import IdempotencyConflict, MissingIdempotencyKey, MissingParams, StorageWriteError
from ..models import IdempotencyKey, utcnow
from ..security import Caller
from ..tracing import TraceContext, ms_since
from ..utils.pdf import render_sample_pdf
from ..utils.storage import delete_object, public_url, upload_bytes
from .redactor import VERTICALS, synthetic_template

logger = logging.getLogger(__name__)

SCOPE = "publish_sample"
MANIFEST_VERSION = "1.0"
IMMUTABLE_CACHE = "public, max-age=31536000, immutable"

@dataclass
class SampleRequest:
    recording_id: Optional[str]
    redacted_text: Optional[str] = None
    vertical: str = "health"
    entities_count_by_type: dict = field(default_factory=dict)
    used_presidio: bool = False
    synthetic: bool = False

    @classmethod
    def from_body(cls, body: dict) -> "SampleRequest":
        body = body or {}
        vertical = (body.get("vertical") or "health").lower()
        return cls(
            recording_id=body.get("recording_id") or body.get("recordingId"),
            redacted_text=body.get("redacted_text") or body.get("redactedText"),
            vertical=vertical if vertical in VERTICALS else "health",
            entities_count_by_type=dict(body.get("entities_count_by_type") or body.get("entitiesCountByType") or {}),
            used_presidio=bool(body.get("used_presidio") or body.get("usedPresidio")),
            synthetic=bool(body.get("synthetic")),
        )

# ---------- Idempotency store ----------

def _evict_expired(s) -> None:
    s.exec(delete(IdempotencyKey).where(IdempotencyKey.scope == SCOPE, IdempotencyKey.expires_at <= utcnow()))
    s.commit()

def lookup_idempotent(key: str, user_id: str) -> Optional[dict]:
    """Stored response for a live key; expired keys are evicted on access."""
    with get_session() as s:
        _evict_expired(s)
        row = s.exec(
            select(IdempotencyKey).where(IdempotencyKey.scope == SCOPE, IdempotencyKey.key == key)
        ).first()
    if not row:
        return None
    if row.user_id != user_id:
        raise IdempotencyConflict("Idempotency-Key already used by another caller")
    return dict(row.response)

def remember_idempotent(key: str, user_id: str, response: dict) -> Optional[dict]:
    """Persist the response; if a concurrent request won the race, return its stored response."""
    ttl = timedelta(hours=get_settings().idempotency_ttl_hours)
    now = utcnow()
    try:
        with get_session() as s:
            s.add(IdempotencyKey(scope=SCOPE, key=key, user_id=user_id, response=response,
                                 created_at=now, expires_at=now + ttl))
            s.commit()
    except IntegrityError:
        return lookup_idempotent(key, user_id)
    return None

# ---------- Publish ----------

def _sample_paths(user_id: str) -> tuple[str, str]:
    now = utcnow()
    stem = f"samples/{user_id}/{now:%Y}/{now:%m}/{now:%d}/{uuid.uuid4()}"
    return f"{stem}.pdf", f"{stem}.json"

def publish_sample(req: SampleRequest, caller: Caller, idempotency_key: Optional[str], ctx: TraceContext) -> dict:
    t0 = time.perf_counter()
    idempotency_key = (idempotency_key or "").strip()
    if not idempotency_key:
        raise MissingIdempotencyKey("Idempotency-Key header is required")

    cached = lookup_idempotent(idempotency_key, caller.id)
    if cached is not None:
        logger.info(f"[samples] idempotency_hit key={idempotency_key} path={cached.get('path')} trace={ctx}")
        return {**cached, "idempotencyHit": True}

    if not req.recording_id or not (req.redacted_text or req.synthetic):
        raise MissingParams("recording_id and redacted_text are required")

    settings = get_settings()
    bucket = settings.samples_bucket
    text = synthetic_template(req.vertical) if req.synthetic else req.redacted_text
    created_at = utcnow()
    pdf = render_sample_pdf(text, req.vertical, created_at)
    sha256 = hashlib.sha256(pdf).hexdigest()
    pdf_path, manifest_path = _sample_paths(caller.id)

    manifest = {
        "version": MANIFEST_VERSION,
        "createdAt": created_at.isoformat().replace("+00:00", "Z"),
        "entitiesCountByType": req.entities_count_by_type,
        "usedPresidio": req.used_presidio,
        "sha256": sha256,
        "idempotencyKey": idempotency_key,
        "vertical": req.vertical,
        "recordingId": req.recording_id,
        "userId": caller.id,
    }

    filename = f"SVN-sample-{req.vertical}-{created_at:%Y%m%d}-{sha256[:8]}.pdf"
    try:
        upload_bytes(bucket, pdf_path, pdf, "application/pdf",
                     CacheControl=IMMUTABLE_CACHE, ContentDisposition=f'inline; filename="{filename}"')
    except (BotoCoreError, ClientError) as e:
        raise StorageWriteError(f"Failed to upload PDF to storage: {e}") from e
    try:
        upload_bytes(bucket, manifest_path, json.dumps(manifest, indent=2).encode("utf-8"),
                     "application/json", CacheControl=IMMUTABLE_CACHE)
    except (BotoCoreError, ClientError) as e:
        try:
            delete_object(bucket, pdf_path)
        except (BotoCoreError, ClientError) as cleanup_err:
            logger.warning(f"[samples] orphan pdf cleanup failed path={pdf_path} error={cleanup_err!r}")
        raise StorageWriteError(f"Failed to upload manifest: {e}") from e

    response = {
        "publicUrl": public_url(bucket, pdf_path),
        "path": pdf_path,
        "manifestUrl": public_url(bucket, manifest_path),
        "sha256": sha256,
    }
    winner = remember_idempotent(idempotency_key, caller.id, response)
    if winner is not None:
        return {**winner, "idempotencyHit": True}

    logger.info(
        f"[samples] published path={pdf_path} bytes={len(pdf)} vertical={req.vertical} "
        f"publish_ms={ms_since(t0)} trace={ctx}"
    )
    return {**response, "idempotencyHit": False}
