# voicenotes/services/transcriber.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..config import get_settings
from ..errors import EmptyTranscript, TranscriptionUpstreamError, UnsupportedFormatError
from ..tracing import TraceContext
from .transcode import trigger_fallback_transcode

logger = logging.getLogger(__name__)

MIN_TRANSCRIPT_CHARS = 2
_FORMAT_HINTS = ("unsupported", "invalid")

@dataclass(frozen=True)
class TranscriptionResult:
    transcript: str
    confidence: Optional[float] = None

def _first_alternative(results: Any) -> dict:
    if not isinstance(results, dict):
        return {}
    channels = results.get("channels") or []
    if not channels or not isinstance(channels[0], dict):
        return {}
    alternatives = channels[0].get("alternatives") or []
    if not alternatives or not isinstance(alternatives[0], dict):
        return {}
    return alternatives[0]

def extract_transcript(results: Any) -> tuple[str, Optional[float]]:
    """
    Deepgram puts the text at results.channels[0].alternatives[0].transcript,
    or under .paragraphs.transcript for paragraph-formatted output.
    The first non-empty location wins.
    """
    alt = _first_alternative(results)
    paragraphs = alt.get("paragraphs") if isinstance(alt.get("paragraphs"), dict) else {}
    transcript = ""
    for candidate in (alt.get("transcript"), paragraphs.get("transcript")):
        if isinstance(candidate, str) and candidate.strip():
            transcript = candidate
            break
    confidence = alt.get("confidence")
    return transcript, (float(confidence) if isinstance(confidence, (int, float)) else None)

def is_unsupported_format(status_code: int, body: str) -> bool:
    lowered = (body or "").lower()
    return status_code == 400 and any(h in lowered for h in _FORMAT_HINTS)

def _headers(api_key: str) -> dict:
    return {"Authorization": f"Token {api_key}", "Content-Type": "application/json"}

def _listen_params(**extra) -> dict:
    settings = get_settings()
    return {"model": settings.deepgram_model, "smart_format": "true", **extra}

async def transcribe(signed_url: str, ctx: TraceContext, *,
                     recording_id: Optional[str] = None,
                     storage_path: Optional[str] = None,
                     client: Optional[httpx.AsyncClient] = None) -> TranscriptionResult:
    """Synchronous (pre-recorded) Deepgram transcription of a signed object URL."""
    settings = get_settings()
    if not settings.deepgram_key:
        raise TranscriptionUpstreamError("DEEPGRAM_API_KEY is not set")

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=None)
    try:
        try:
            r = await client.post(
                f"{settings.deepgram_base}/v1/listen",
                params=_listen_params(),
                headers=_headers(settings.deepgram_key),
                json={"url": signed_url},
            )
        except httpx.HTTPError as e:
            raise TranscriptionUpstreamError(f"Deepgram request failed: {e}") from e

        if r.status_code >= 300:
            body = r.text
            if is_unsupported_format(r.status_code, body):
                logger.info(f"[transcriber] unsupported format, triggering fallback transcode trace={ctx}")
                if recording_id:
                    try:
                        await trigger_fallback_transcode(recording_id, storage_path or "", ctx)
                    except Exception as e:
                        logger.error(f"[transcriber] fallback transcode failed trace={ctx} error={e!r}")
                raise UnsupportedFormatError(f"Unsupported format: {body}", upstream_status=r.status_code, upstream_body=body)
            raise TranscriptionUpstreamError(
                f"Deepgram failed: {r.status_code} {body}", upstream_status=r.status_code, upstream_body=body
            )

        try:
            data = r.json()
        except ValueError as e:
            raise TranscriptionUpstreamError("Deepgram returned a non-JSON body", upstream_status=r.status_code) from e
    finally:
        if owns_client:
            await client.aclose()

    transcript, confidence = extract_transcript(data.get("results") if isinstance(data, dict) else None)
    if len(transcript) < MIN_TRANSCRIPT_CHARS:
        raise EmptyTranscript("Deepgram returned empty transcript")

    logger.info(f"[transcriber] ok trace={ctx} chars={len(transcript)} confidence={confidence}")
    return TranscriptionResult(transcript=transcript, confidence=confidence)

async def submit_job(signed_url: str, callback_url: str, ctx: TraceContext,
                     client: Optional[httpx.AsyncClient] = None) -> str:
    """Start a callback-mode Deepgram job; returns the provider's job (request) id."""
    settings = get_settings()
    if not settings.deepgram_key:
        raise TranscriptionUpstreamError("DEEPGRAM_API_KEY is not set")

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=60)
    try:
        r = await client.post(
            f"{settings.deepgram_base}/v1/listen",
            params=_listen_params(callback=callback_url),
            headers=_headers(settings.deepgram_key),
            json={"url": signed_url},
        )
    except httpx.HTTPError as e:
        raise TranscriptionUpstreamError(f"Deepgram request failed: {e}") from e
    finally:
        if owns_client:
            await client.aclose()

    if r.status_code >= 300:
        raise TranscriptionUpstreamError(
            f"Deepgram job submit failed: {r.status_code} {r.text}", upstream_status=r.status_code, upstream_body=r.text
        )
    job_id = (r.json() or {}).get("request_id")
    if not job_id:
        raise TranscriptionUpstreamError("Deepgram returned no request_id", upstream_status=r.status_code)
    logger.info(f"[transcriber] job submitted job_id={job_id} trace={ctx}")
    return job_id
