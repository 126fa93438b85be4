# voicenotes/routers/redact.py
from typing import Optional

from fastapi import APIRouter, Body, Depends, Header

from ..config import get_settings
from ..errors import ValidationError
from ..security import Caller, require_user
from ..services.redactor import redact, validate_pattern_safety
from ..tracing import TraceContext
from .common import body_trace, error_response

router = APIRouter(prefix="/redact", tags=["redact"])

@router.get("")
async def redact_health():
    settings = get_settings()
    return {
        "ok": True,
        "usedPresidio": settings.presidio_configured,
        "redactionEnabled": settings.redaction_enabled,
        "patterns": validate_pattern_safety(),
    }

@router.post("")
async def redact_text(
    body: dict = Body(default={}),
    x_trace_id: Optional[str] = Header(default=None, alias="X-Trace-Id"),
    caller: Caller = Depends(require_user),
):
    ctx = TraceContext.resolve(body_trace(body), x_trace_id)
    text = body.get("text")
    context = body.get("context") if isinstance(body.get("context"), dict) else {}
    try:
        if not text or not isinstance(text, str):
            raise ValidationError("Text is required and must be a string")
        result = await redact(
            text,
            ctx=ctx,
            synthetic=bool(body.get("synthetic")),
            vertical=context.get("vertical"),
        )
    except Exception as e:
        return error_response(e, ctx)
    return result.to_response()
