# voicenotes/routers/samples.py
from typing import Optional

from fastapi import APIRouter, Body, Depends, Header
from fastapi.concurrency import run_in_threadpool

from ..security import Caller, require_user
from ..services.samples import SampleRequest, publish_sample
from ..tracing import TraceContext
from .common import error_response

router = APIRouter(prefix="/samples", tags=["samples"])

@router.post("")
async def publish(
    body: dict = Body(default={}),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    x_trace_id: Optional[str] = Header(default=None, alias="X-Trace-Id"),
    caller: Caller = Depends(require_user),
):
    ctx = TraceContext.resolve(None, x_trace_id)
    try:
        # PDF render + S3 uploads are blocking
        return await run_in_threadpool(publish_sample, SampleRequest.from_body(body), caller, idempotency_key, ctx)
    except Exception as e:
        return error_response(e, ctx)
