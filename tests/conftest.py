import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from voicenotes import db
from voicenotes.config import get_settings
from voicenotes.models import Recording
from voicenotes.security import create_access_token
from voicenotes.services import emailer

TEST_SETTINGS = {
    "deepgram_key": "dg-test",
    "deepgram_base": "https://api.deepgram.com",
    "deepgram_model": "nova-2",
    "deepgram_callback_url": None,
    "summary_model": "gpt-4o-mini",
    "from_name": "SmartVoiceNotes",
    "base_url": "http://testserver",
    "openai_key": "sk-test",
    "resend_key": "",
    "from_email": "",
    "reply_to": "",
    "redaction_enabled": True,
    "redaction_original_offsets": False,
    "presidio_analyzer_url": "",
    "presidio_anonymizer_url": "",
    "transcode_fallback_url": "",
    "webhook_secret": "",
    "service_token": "",
    "jwt_secret": "test-secret",
    "jwt_alg": "HS256",
    "dev_allow_no_auth": False,
    "recordings_bucket": "recordings",
    "samples_bucket": "public_redacted_samples",
    "idempotency_ttl_hours": 24,
}

@pytest.fixture(autouse=True)
def settings(monkeypatch, tmp_path):
    """Pin every setting a test could depend on, regardless of the local .env."""
    s = get_settings()
    for name, value in TEST_SETTINGS.items():
        monkeypatch.setattr(s, name, value)
    monkeypatch.setattr(emailer, "OUTBOX_DIR", tmp_path / "outbox")
    return s

@pytest.fixture(autouse=True)
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    from voicenotes import models  # noqa: F401
    SQLModel.metadata.create_all(eng)
    db.set_engine(eng)
    yield eng
    SQLModel.metadata.drop_all(eng)

@pytest.fixture
def client():
    from voicenotes.main import app
    with TestClient(app) as c:
        yield c

def auth_headers(user_id: str = "u1", email: str | None = None) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, email=email)}"}

@pytest.fixture
def headers():
    return auth_headers()

@pytest.fixture
def make_headers():
    return auth_headers

@pytest.fixture
def recording():
    def _make(rec_id: str = "R1", user_id: str = "u1",
              storage_path: str | None = "recordings/u1/2024/01/01/a.m4a") -> Recording:
        rec = Recording(id=rec_id, user_id=user_id, storage_path=storage_path, mime_type="audio/mp4")
        with db.get_session() as s:
            s.add(rec)
            s.commit()
        return rec
    return _make
