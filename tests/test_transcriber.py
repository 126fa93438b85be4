import asyncio

import httpx
import pytest

from voicenotes.errors import EmptyTranscript, TranscriptionUpstreamError, UnsupportedFormatError
from voicenotes.services import transcriber
from voicenotes.services.transcriber import extract_transcript, transcribe
from voicenotes.tracing import TraceContext

CTX = TraceContext("trace-test")

def _dg(transcript="", paragraphs=None, confidence=0.93):
    alt = {"transcript": transcript, "confidence": confidence}
    if paragraphs is not None:
        alt["paragraphs"] = {"transcript": paragraphs}
    return {"results": {"channels": [{"alternatives": [alt]}]}}

def _run(handler, **kw):
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as c:
            return await transcribe("https://signed/a.m4a", CTX, client=c, **kw)
    return asyncio.run(go())

def test_extract_prefers_first_non_empty_location():
    assert extract_transcript(_dg("hello there")["results"]) == ("hello there", 0.93)
    assert extract_transcript(_dg("", paragraphs="from paragraphs")["results"])[0] == "from paragraphs"
    assert extract_transcript(None) == ("", None)
    assert extract_transcript({"channels": []}) == ("", None)

def test_transcribe_posts_url_and_model():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = request.read()
        return httpx.Response(200, json=_dg("we shipped the release"))

    result = _run(handler)
    assert result.transcript == "we shipped the release"
    assert result.confidence == 0.93
    assert "/v1/listen" in seen["url"]
    assert "model=nova-2" in seen["url"]
    assert "smart_format=true" in seen["url"]
    assert seen["auth"] == "Token dg-test"
    assert b"https://signed/a.m4a" in seen["body"]

def test_short_transcript_is_empty():
    with pytest.raises(EmptyTranscript):
        _run(lambda r: httpx.Response(200, json=_dg("a")))

def test_upstream_failure_carries_status():
    with pytest.raises(TranscriptionUpstreamError) as exc:
        _run(lambda r: httpx.Response(500, text="boom"))
    assert exc.value.upstream_status == 500
    assert exc.value.upstream_body == "boom"

def test_unsupported_format_triggers_fallback(monkeypatch):
    calls = []

    async def fake_trigger(recording_id, storage_path, ctx, client=None):
        calls.append((recording_id, storage_path))

    monkeypatch.setattr(transcriber, "trigger_fallback_transcode", fake_trigger)
    with pytest.raises(UnsupportedFormatError):
        _run(lambda r: httpx.Response(400, text='{"err_msg":"Unsupported audio format"}'),
             recording_id="R1", storage_path="recordings/u1/a.caf")
    assert calls == [("R1", "recordings/u1/a.caf")]

def test_fallback_failure_does_not_change_outcome(monkeypatch):
    async def broken_trigger(*a, **kw):
        raise RuntimeError("collaborator down")

    monkeypatch.setattr(transcriber, "trigger_fallback_transcode", broken_trigger)
    with pytest.raises(UnsupportedFormatError):
        _run(lambda r: httpx.Response(400, text="invalid data"), recording_id="R1", storage_path="x.caf")

def test_missing_key(settings, monkeypatch):
    monkeypatch.setattr(settings, "deepgram_key", None)
    with pytest.raises(TranscriptionUpstreamError):
        _run(lambda r: httpx.Response(200, json=_dg("never called")))
