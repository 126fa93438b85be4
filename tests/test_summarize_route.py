import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from voicenotes.db import get_session
from voicenotes.models import Recording, Summary
from voicenotes.routers import pipeline as pipeline_routes
from voicenotes.services.store import insert_transcript
from voicenotes.services.summarizer import SummaryPayload

@pytest.fixture
def fake_summarize(monkeypatch):
    styles = []

    async def _summarize(transcript, ctx, style_key="quick_recap_action_items", **kw):
        styles.append(style_key)
        return SummaryPayload(title=f"v{len(styles)}", summary=transcript[:20])

    monkeypatch.setattr(pipeline_routes, "summarize_long", _summarize)
    return styles

def test_no_transcript_is_422(client, headers, recording, fake_summarize):
    recording()
    r = client.post("/recordings/R1/summarize", headers=headers, json={})
    assert r.status_code == 422
    assert r.json()["code"] == "no_transcript"
    assert fake_summarize == []

def test_resummarize_upserts(client, headers, recording, fake_summarize):
    recording()
    insert_transcript("R1", "Decided to move the launch to May.")

    first = client.post("/recordings/R1/summarize", headers=headers, json={"summary_style": "decisions_next_steps"})
    second = client.post("/recordings/R1/summarize", headers=headers, json={})
    assert first.status_code == 200 and second.status_code == 200
    assert second.json()["summary"]["title"] == "v2"
    assert fake_summarize == ["decisions_next_steps", "quick_recap_action_items"]

    with get_session() as s:
        rows = s.exec(select(Summary).where(Summary.recording_id == "R1")).all()
        rec = s.get(Recording, "R1")
    assert len(rows) == 1
    assert rows[0].title == "v2"
    assert rec.status == "ready"

def test_other_users_recording(client, make_headers, recording, fake_summarize):
    recording(user_id="u2")
    r = client.post("/recordings/R1/summarize", headers=make_headers("u1"), json={})
    assert r.status_code == 404

def test_summary_write_failure_marks_error(client, headers, recording, fake_summarize, monkeypatch):
    recording()
    insert_transcript("R1", "Decided to move the launch to May.")

    def broken_upsert(*args, **kw):
        raise OperationalError("UPDATE summaries", {}, Exception("locked"))

    monkeypatch.setattr(pipeline_routes, "upsert_summary", broken_upsert)
    r = client.post("/recordings/R1/summarize", headers=headers, json={})
    assert r.status_code == 500
    with get_session() as s:
        rec = s.get(Recording, "R1")
    assert rec.status == "error"
    assert "locked" in rec.last_error
