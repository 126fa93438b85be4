import json
import logging
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..config import get_settings
from ..errors import SummarizationError
from ..tracing import TraceContext

logger = logging.getLogger(__name__)

DEFAULT_STYLE = "quick_recap_action_items"
STYLE_KEYS = ("quick_recap_action_items", "quick_recap", "organized_by_topic", "decisions_next_steps")
STYLE_ALIASES = ("summary_style_key", "summary_style", "summaryStyle")

CHUNK_THRESHOLD = 12_000
CHUNK_SIZE = 3_500

SUMMARY_SYSTEM_PROMPT = (
    "You are a note-taking assistant. Return ONLY a JSON object with keys: "
    "title (string), summary (string), bullets (array of strings), "
    "action_items (array of strings), tags (array of strings), "
    "confidence (number between 0 and 1). "
    "Be concise, factual, and use names/dates from the transcript when available."
)

MERGE_SYSTEM_PROMPT = (
    "You merge partial note summaries of one recording into one final JSON object "
    "with the same keys: title, summary, bullets, action_items, tags, confidence. "
    "Deduplicate bullets and action items and keep their original order."
)

_STYLE_INSTRUCTIONS = {
    "organized_by_topic": (
        "Organize the notes by topic. Group related points under short topic headings "
        "inside the summary, and make each bullet start with its topic."
    ),
    "decisions_next_steps": (
        "Focus on decisions that were made and the next steps. Bullets list decisions; "
        "action_items list concrete next steps with owners when mentioned."
    ),
    "quick_recap_action_items": (
        "Give a quick recap in 2-3 sentences, up to 5 key bullets, and every action item mentioned."
    ),
}

class SummaryPayload(BaseModel):
    """Normalized summary as stored and emailed."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = "Summary"
    summary: str = ""
    bullets: List[str] = Field(default_factory=list)
    action_items: List[str] = Field(default_factory=list, alias="actionItems")
    tags: List[str] = Field(default_factory=list)
    confidence: float = 0.8

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, v: Any) -> str:
        return str(v).strip() if v and str(v).strip() else "Summary"

    @field_validator("summary", mode="before")
    @classmethod
    def _summary(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("bullets", "action_items", "tags", mode="before")
    @classmethod
    def _string_list(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        if not isinstance(v, (list, tuple)):
            return []
        return [str(x).strip() for x in v if x is not None and str(x).strip()]

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v: Any) -> float:
        try:
            c = float(v)
        except (TypeError, ValueError):
            return 0.8
        return min(1.0, max(0.0, c))

def resolve_style_key(body: Optional[dict] = None) -> str:
    """First alias present in the body wins; anything unknown becomes the default."""
    body = body or {}
    for alias in STYLE_ALIASES:
        value = body.get(alias)
        if isinstance(value, str) and value.strip():
            key = value.strip()
            return key if key in STYLE_KEYS else DEFAULT_STYLE
    return DEFAULT_STYLE

def style_instruction(style_key: Optional[str]) -> str:
    return _STYLE_INSTRUCTIONS.get(style_key or "", _STYLE_INSTRUCTIONS[DEFAULT_STYLE])

def normalize_summary(raw: Any) -> SummaryPayload:
    if not isinstance(raw, dict):
        raw = {}
    return SummaryPayload.model_validate(raw)

def chunk_text(text: str, size: int = CHUNK_SIZE) -> List[str]:
    return [text[i:i + size] for i in range(0, len(text), size)] or [""]

def _client():
    from openai import AsyncOpenAI
    settings = get_settings()
    if not settings.openai_key:
        raise SummarizationError("OPENAI_API_KEY is not set")
    return AsyncOpenAI(api_key=settings.openai_key)

async def _openai_json(system: str, user: str, *, client=None) -> dict:
    from openai import OpenAIError
    settings = get_settings()
    client = client or _client()
    try:
        r = await client.chat.completions.create(
            model=settings.summary_model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            temperature=0.2,
            response_format={"type": "json_object"},
        )
    except OpenAIError as e:
        raise SummarizationError(
            f"OpenAI request failed: {e}", upstream_status=getattr(e, "status_code", None)
        ) from e

    content = (r.choices[0].message.content or "") if r.choices else ""
    try:
        return json.loads(content or "{}")
    except json.JSONDecodeError as e:
        raise SummarizationError("OpenAI returned invalid JSON", upstream_body=content[:500]) from e

def _user_prompt(transcript: str, style_key: str) -> str:
    return (
        f"Style: {style_instruction(style_key)}\n\n"
        f"Transcript (verbatim; may be imperfect):\n{transcript}"
    )

async def summarize(transcript: str, ctx: TraceContext, style_key: str = DEFAULT_STYLE, *, client=None) -> SummaryPayload:
    """One-shot structured summary of a transcript."""
    raw = await _openai_json(SUMMARY_SYSTEM_PROMPT, _user_prompt(transcript, style_key), client=client)
    result = normalize_summary(raw)
    logger.info(f"[summarizer] ok trace={ctx} style={style_key} bullets={len(result.bullets)}")
    return result

async def summarize_long(transcript: str, ctx: TraceContext, style_key: str = DEFAULT_STYLE, *, client=None) -> SummaryPayload:
    """
    Transcripts over CHUNK_THRESHOLD chars are summarized in CHUNK_SIZE pieces,
    one after another, then merged in a final call. Shorter input is a single call.
    """
    if len(transcript) <= CHUNK_THRESHOLD:
        return await summarize(transcript, ctx, style_key, client=client)

    client = client or _client()
    chunks = chunk_text(transcript)
    logger.info(f"[summarizer] chunking trace={ctx} chars={len(transcript)} chunks={len(chunks)}")

    partials: List[dict] = []
    for i, chunk in enumerate(chunks, 1):
        raw = await _openai_json(
            SUMMARY_SYSTEM_PROMPT,
            f"Part {i} of {len(chunks)}.\n\n" + _user_prompt(chunk, style_key),
            client=client,
        )
        partials.append(normalize_summary(raw).model_dump())

    merged = await _openai_json(
        MERGE_SYSTEM_PROMPT,
        f"Style: {style_instruction(style_key)}\n\nMerge these partial JSON summaries into one final JSON:\n"
        + json.dumps(partials, ensure_ascii=False),
        client=client,
    )
    return normalize_summary(merged)
