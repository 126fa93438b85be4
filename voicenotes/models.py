from sqlmodel import SQLModel, Field
from typing import Optional, List
from datetime import datetime, timezone
from sqlalchemy import Column, DateTime, JSON, UniqueConstraint
import enum
import uuid

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

# SQLite hands back naive values even for timezone-aware columns
def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)

def new_id() -> str:
    return str(uuid.uuid4())

class RecordingStatus(str, enum.Enum):
    LOCAL = "local"
    UPLOADING = "uploading"
    TRANSCRIBING = "transcribing"
    SUMMARIZING = "summarizing"
    READY = "ready"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (RecordingStatus.READY, RecordingStatus.ERROR)

class Recording(SQLModel, table=True):
    __tablename__ = "recordings"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    user_id: str = Field(index=True, max_length=64)
    storage_path: Optional[str] = Field(default=None, max_length=1024)
    mime_type: Optional[str] = Field(default=None, max_length=128)

    status: str = Field(default=RecordingStatus.LOCAL.value, max_length=32)
    status_changed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    last_error: Optional[str] = None
    duration_ms: Optional[int] = None

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

class Transcript(SQLModel, table=True):
    __tablename__ = "transcripts"

    id: Optional[int] = Field(default=None, primary_key=True)
    recording_id: str = Field(index=True, max_length=64)
    text: str
    confidence: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

class Summary(SQLModel, table=True):
    __tablename__ = "summaries"

    id: Optional[int] = Field(default=None, primary_key=True)
    recording_id: str = Field(index=True, max_length=64)
    title: str = ""
    summary: str = ""
    bullets: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    action_items: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    confidence: float = 0.0
    summary_style_key: Optional[str] = Field(default=None, max_length=64)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

# UI progress mirror; may lag or be missing
class PipelineRun(SQLModel, table=True):
    __tablename__ = "pipeline_runs"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    recording_id: str = Field(index=True, max_length=64)
    user_id: Optional[str] = Field(default=None, index=True, max_length=64)
    stage: str = Field(default="queued", max_length=32)
    progress: float = 0.0
    step: int = 0
    trace_id: Optional[str] = Field(default=None, max_length=128)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

class TranscriptJob(SQLModel, table=True):
    __tablename__ = "transcript_jobs"

    job_id: str = Field(primary_key=True, max_length=128)
    recording_id: str = Field(index=True, max_length=64)
    status: str = Field(default="processing", max_length=32)  # processing|completed|failed
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

# Per-run history backing the runs list and metrics endpoints
class RunLog(SQLModel, table=True):
    __tablename__ = "sv_runs"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    user_id: str = Field(index=True, max_length=64)
    recording_id: Optional[str] = Field(default=None, max_length=64)
    pipeline_run_id: Optional[str] = Field(default=None, max_length=64)
    trace_id: Optional[str] = Field(default=None, max_length=128)

    audio_url: Optional[str] = Field(default=None, max_length=1024)
    email_to: Optional[str] = Field(default=None, max_length=320)
    email_subject: Optional[str] = None
    email_upstream_status: Optional[int] = None
    email_id: Optional[str] = Field(default=None, max_length=128)
    idempotency_key: Optional[str] = Field(default=None, max_length=160)

    transcript_len: Optional[int] = None
    summary_len: Optional[int] = None
    status_tag: str = Field(default="ok", max_length=64)

    t_total_ms: Optional[int] = None
    t_transcribe_ms: Optional[int] = None
    t_summarize_ms: Optional[int] = None
    t_email_ms: Optional[int] = None

    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime(timezone=True))

class IdempotencyKey(SQLModel, table=True):
    __tablename__ = "idempotency_keys"
    __table_args__ = (UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    scope: str = Field(max_length=64)
    key: str = Field(max_length=255)
    user_id: Optional[str] = Field(default=None, max_length=64)
    response: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    expires_at: datetime = Field(sa_type=DateTime(timezone=True))
