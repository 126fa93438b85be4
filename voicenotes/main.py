# voicenotes/main.py
import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .db import init_db
from .errors import PipelineError
from .routers import pipeline, redact, runs, samples
from .routers.common import error_response
from .tracing import TraceContext

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="SmartVoiceNotes")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["authorization", "content-type", "x-trace-id", "idempotency-key",
                   "x-webhook-secret", "x-service-token"],
)

@app.on_event("startup")
async def startup_event():
    init_db()
    settings = get_settings()
    logger.info(
        f"[startup] env={settings.env} redaction={settings.redaction_enabled} "
        f"presidio={settings.presidio_configured} resend={bool(settings.resend_key)}"
    )

@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    return error_response(exc, TraceContext.resolve(None, request.headers.get("x-trace-id")))

app.include_router(pipeline.router)
app.include_router(redact.router)
app.include_router(runs.router)
app.include_router(samples.router)

@app.get("/healthz")
def healthz():
    return {"ok": True}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("voicenotes.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
