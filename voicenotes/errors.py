# voicenotes/errors.py
from __future__ import annotations
from typing import Optional

class PipelineError(Exception):
    """Base for every failure that is reported to callers as {ok:false, code, message, trace}."""

    code = "unhandled"
    status_code = 500

    def __init__(self, message: str = "", *, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code

    def payload(self, trace: str) -> dict:
        return {"ok": False, "code": self.code, "message": self.message, "trace": trace}

# ---------- 4xx: bad input, no side effects ----------

class ValidationError(PipelineError):
    code = "validation_error"
    status_code = 400

class MissingParams(ValidationError):
    code = "missing_params"

class InvalidPath(ValidationError):
    code = "invalid_path"

class InvalidEmail(ValidationError):
    code = "invalid_email"

class InputTooLarge(ValidationError):
    code = "input_too_large"
    status_code = 413

class NotFoundError(PipelineError):
    code = "not_found"
    status_code = 404

class RecordingNotFound(NotFoundError):
    code = "recording_not_found"

class RecordingLookupFailed(PipelineError):
    code = "recording_lookup_failed"

class StatusWriteError(PipelineError):
    code = "status_write_failed"

class RedactionBudgetExceeded(PipelineError):
    code = "redaction_timeout"

# ---------- upstream providers ----------

class UpstreamError(PipelineError):
    """A transcription/summarization/email provider failure."""

    code = "upstream_error"
    status_code = 502

    def __init__(self, message: str = "", *, upstream_status: Optional[int] = None,
                 upstream_body: Optional[str] = None, **kw):
        super().__init__(message, **kw)
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body

    def payload(self, trace: str) -> dict:
        out = super().payload(trace)
        if self.upstream_status is not None:
            out["upstream_status"] = self.upstream_status
        return out

class TranscriptionUpstreamError(UpstreamError):
    code = "transcription_failed"

class EmptyTranscript(UpstreamError):
    code = "empty_transcript"

class SummarizationError(UpstreamError):
    code = "summarization_failed"

class EmailSendError(UpstreamError):
    code = "email_failed"

class UnsupportedFormatError(UpstreamError):
    code = "unsupported_format"
    status_code = 422

# ---------- sample publishing ----------

class MissingIdempotencyKey(ValidationError):
    code = "missing_idempotency_key"

class IdempotencyConflict(PipelineError):
    code = "idempotency_conflict"
    status_code = 409

class StorageWriteError(PipelineError):
    code = "storage_write_failed"

class NoTranscript(PipelineError):
    code = "no_transcript"
    status_code = 422
