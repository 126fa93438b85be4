# voicenotes/routers/common.py
import logging
from typing import Optional

from fastapi.responses import JSONResponse

from ..errors import PipelineError
from ..tracing import TraceContext

logger = logging.getLogger(__name__)

def body_trace(body: Optional[dict]) -> Optional[str]:
    body = body or {}
    return body.get("trace_id") or body.get("traceId")

def error_response(exc: Exception, ctx: TraceContext) -> JSONResponse:
    """{ok:false, code, message, trace} with the error's HTTP status."""
    if isinstance(exc, PipelineError):
        logger.warning(f"[api] {exc.code}: {exc.message} trace={ctx}")
        return JSONResponse(status_code=exc.status_code, content=exc.payload(ctx.trace_id))
    logger.exception(f"[api] unhandled error trace={ctx}")
    return JSONResponse(
        status_code=500,
        content={"ok": False, "code": "unhandled", "message": str(exc) or exc.__class__.__name__, "trace": ctx.trace_id},
    )
