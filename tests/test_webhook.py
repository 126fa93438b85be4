import asyncio

import httpx
import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from voicenotes.db import get_session
from voicenotes.models import Recording, Summary, Transcript, TranscriptJob
from voicenotes.services import webhook
from voicenotes.services.summarizer import SummaryPayload
from voicenotes.services.transcriber import submit_job
from voicenotes.tracing import TraceContext

def _completed(job_id="job-1", transcript="Budget approved for Q3 hiring."):
    return {
        "job_id": job_id,
        "status": "completed",
        "results": {"channels": [{"alternatives": [{"transcript": transcript, "confidence": 0.88}]}]},
    }

@pytest.fixture
def job(recording):
    recording()
    with get_session() as s:
        s.add(TranscriptJob(job_id="job-1", recording_id="R1", status="processing"))
        s.commit()

@pytest.fixture
def fake_summarize(monkeypatch):
    calls = []

    async def _summarize(transcript, ctx, style_key="quick_recap_action_items", **kw):
        calls.append(transcript)
        return SummaryPayload(title="Budget", summary="Q3 hiring approved.")

    monkeypatch.setattr(webhook, "summarize_long", _summarize)
    return calls

def _count(model):
    with get_session() as s:
        return len(s.exec(select(model).where(model.recording_id == "R1")).all())

def _get(model, key):
    with get_session() as s:
        return s.get(model, key)

def test_completed_job_writes_transcript_and_summary(client, job, fake_summarize):
    r = client.post("/provider-webhook", json=_completed(), headers={"X-Trace-Id": "wh-1"})
    assert r.status_code == 200
    assert r.json() == {"ok": True, "trace": "wh-1"}
    assert _count(Transcript) == 1
    assert _count(Summary) == 1
    assert _get(Recording, "R1").status == "ready"
    assert _get(TranscriptJob, "job-1").status == "completed"

def test_redelivery_is_acknowledged_without_side_effects(client, job, fake_summarize):
    client.post("/provider-webhook", json=_completed())
    r = client.post("/provider-webhook", json=_completed())
    assert r.status_code == 200
    assert r.json()["message"] == "Already processed"
    assert _count(Transcript) == 1
    assert _count(Summary) == 1
    assert len(fake_summarize) == 1

def test_failed_job_marks_error(client, job, fake_summarize):
    r = client.post("/provider-webhook", json={"job_id": "job-1", "status": "failed", "error": "decode error"})
    assert r.status_code == 200
    assert r.json()["ok"] is True
    rec = _get(Recording, "R1")
    assert rec.status == "error"
    assert rec.last_error == "decode error"
    assert _count(Transcript) == 0
    assert _count(Summary) == 0

def test_empty_transcript_fails_soft(client, job, fake_summarize):
    r = client.post("/provider-webhook", json=_completed(transcript=" "))
    assert r.status_code == 200
    assert r.json()["message"] == "Empty transcript, status updated"
    assert _get(Recording, "R1").status == "error"
    assert _count(Transcript) == 0
    assert fake_summarize == []

def test_missing_job_id(client):
    r = client.post("/provider-webhook", json={"status": "completed"})
    assert r.status_code == 400
    assert r.json()["code"] == "missing_job_id"

def _all(model):
    with get_session() as s:
        return len(s.exec(select(model)).all())

def test_unknown_job_is_acknowledged(client, job, fake_summarize):
    r = client.post("/provider-webhook", json=_completed(job_id="stray-42"))
    assert r.status_code == 200
    assert r.json()["message"] == "Unknown job"
    assert _all(Transcript) == 0
    assert _all(Summary) == 0
    assert fake_summarize == []
    assert _get(Recording, "R1").status == "local"

def test_non_terminal_status_is_acknowledged(client, job, fake_summarize):
    r = client.post("/provider-webhook", json={"job_id": "job-1", "status": "processing"}, headers={"X-Trace-Id": "wh-2"})
    assert r.status_code == 200
    assert r.json() == {"ok": True, "trace": "wh-2"}
    assert _all(Transcript) == 0
    assert _all(Summary) == 0
    assert _get(TranscriptJob, "job-1").status == "processing"
    assert _get(Recording, "R1").status == "local"

def test_job_id_from_deepgram_metadata(client, job, fake_summarize):
    payload = _completed()
    del payload["job_id"], payload["status"]
    payload["metadata"] = {"request_id": "job-1"}
    r = client.post("/provider-webhook", json=payload)
    assert r.status_code == 200
    assert _count(Transcript) == 1
    assert _count(Summary) == 1
    assert _get(TranscriptJob, "job-1").status == "completed"

def test_summary_write_failure_marks_error(client, job, fake_summarize, monkeypatch):
    def broken_insert(*args, **kw):
        raise OperationalError("INSERT INTO summaries", {}, Exception("disk full"))

    monkeypatch.setattr(webhook, "insert_summary", broken_insert)
    r = client.post("/provider-webhook", json=_completed())
    assert r.status_code == 500
    assert r.json()["code"] == "unhandled"
    assert _get(Recording, "R1").status == "error"
    assert _get(TranscriptJob, "job-1").status == "processing"

def test_job_for_deleted_recording_is_acknowledged(client, fake_summarize):
    with get_session() as s:
        s.add(TranscriptJob(job_id="job-9", recording_id="gone", status="processing"))
        s.commit()
    r = client.post("/provider-webhook", json=_completed(job_id="job-9"))
    assert r.status_code == 200
    assert r.json()["message"] == "Recording not found"
    assert _all(Transcript) == 0
    assert _get(TranscriptJob, "job-9").status == "failed"
    assert fake_summarize == []

def test_webhook_secret_enforced_when_configured(client, settings, monkeypatch, job, fake_summarize):
    monkeypatch.setattr(settings, "webhook_secret", "s3cret")
    assert client.post("/provider-webhook", json=_completed()).status_code == 401
    r = client.post("/provider-webhook", json=_completed(), headers={"X-Webhook-Secret": "s3cret"})
    assert r.status_code == 200

def test_transcribe_async_records_job(client, headers, recording, monkeypatch):
    recording()
    monkeypatch.setattr(webhook, "create_signed_url", lambda obj: f"https://signed.example/{obj}")
    seen = {}

    async def fake_submit(signed_url, callback_url, ctx, client=None):
        seen["callback"] = callback_url
        return "dg-req-1"

    monkeypatch.setattr(webhook, "submit_job", fake_submit)
    r = client.post("/recordings/R1/transcribe-async", headers=headers)
    assert r.status_code == 200
    assert r.json()["jobId"] == "dg-req-1"
    assert seen["callback"] == "http://testserver/provider-webhook"
    assert _get(TranscriptJob, "dg-req-1").status == "processing"
    assert _get(Recording, "R1").status == "transcribing"

def test_submit_job_reads_request_id(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        assert "callback=" in str(request.url)
        return httpx.Response(200, json={"request_id": "abc-123"})

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as c:
            return await submit_job("https://signed/a", "http://cb/hook", TraceContext("t"), client=c)

    assert asyncio.run(go()) == "abc-123"
