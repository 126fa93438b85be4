# voicenotes/services/redactor.py
"""PII redaction: an ordered regex cascade with optional Presidio enrichment.

Each rule scans the text *as left by the previous rules*, replacing matches
with a fixed placeholder. Entity offsets are therefore relative to the text at
the moment that rule ran, not to the original input. Set
``REDACTION_ORIGINAL_OFFSETS=1`` to resolve every rule against the original
text instead (overlaps go to the earlier rule, replacements applied once).
"""
from __future__ import annotations

import logging
import re
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

import httpx

from ..config import get_settings
from ..errors import InputTooLarge, RedactionBudgetExceeded
from ..tracing import TraceContext, ms_since

logger = logging.getLogger(__name__)

MAX_INPUT_LENGTH = 50_000
MAX_SCAN_STEPS = 20_000

ANALYZER_TIMEOUT = 3.5
ANALYZER_RETRY_TIMEOUT = 0.5
ANONYMIZER_TIMEOUT = 1.0

@dataclass(frozen=True)
class RedactionRule:
    name: str
    pattern: re.Pattern
    placeholder: str

@dataclass(frozen=True)
class Entity:
    type: str
    start: int
    end: int

    def as_dict(self) -> dict:
        return {"type": self.type, "start": self.start, "end": self.end}

@dataclass
class RedactionResult:
    redacted_text: str
    entities: List[Entity] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    used_presidio: bool = False
    bypassed: bool = False
    synthetic: bool = False

    def to_response(self) -> dict:
        return {
            "redactedText": self.redacted_text,
            "entities": [e.as_dict() for e in self.entities],
            "entitiesCountByType": dict(self.counts),
            "usedPresidio": self.used_presidio,
            "synthetic": self.synthetic,
            "bypassed": self.bypassed,
        }

_MONTHS = r"(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)"

# Order matters: later rules see the placeholders written by earlier ones.
RULES: Sequence[RedactionRule] = (
    RedactionRule("EMAIL", re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE), "[EMAIL]"),
    RedactionRule("PHONE", re.compile(r"(?<!\d)(?:\+?1[-.\s]?)?(?:\(?\d{3}\)?[-.\s]?)\d{3}[-.\s]?\d{4}(?!\d)"), "[PHONE]"),
    RedactionRule("URL", re.compile(r"https?://\S+|www\.\S+", re.IGNORECASE), "[LINK]"),
    RedactionRule("IP", re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"), "[IP]"),
    RedactionRule(
        "DATE",
        re.compile(
            r"\b(?:\d{1,2}[/-]){2}\d{2,4}\b|\b" + _MONTHS + r"[a-z]*\s+\d{1,2},?\s+\d{2,4}\b",
            re.IGNORECASE,
        ),
        "[DATE]",
    ),
    RedactionRule("SSN", re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[ID]"),
    RedactionRule(
        "POLICY_MRN",
        re.compile(r"\b(?i:mrn|chart|medical record|policy|claim|acct|account)\s*[:#]?\s*[A-Z0-9-]{6,20}\b"),
        "[ID]",
    ),
    RedactionRule(
        "NAME_CUE",
        re.compile(r"(?i:\bpatient|\bclient|\bdr\.|\battorney|\bnurse|\bjudge)\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)?"),
        "[NAME]",
    ),
    RedactionRule("NAME_CAPITALIZED", re.compile(r"(?<![.!?]\s)\b[A-Z][a-z]+\s+[A-Z][a-z]+\b"), "[NAME]"),
    RedactionRule(
        "ORG",
        re.compile(r"(?i:\bhospital|\bclinic|\bllp|\bllc|\binc\.|\buniversity|\bcourt of|\bdepartment of)\s+[A-Z][^\n,]+"),
        "[ORG]",
    ),
)

PLACEHOLDERS = frozenset(r.placeholder for r in RULES)

def check_size(text: str) -> None:
    if len(text) > MAX_INPUT_LENGTH:
        raise InputTooLarge(f"Input text too long: {len(text)} chars (max: {MAX_INPUT_LENGTH})")

class _Budget:
    def __init__(self, limit: int):
        self.limit = limit
        self.used = 0

    def tick(self) -> None:
        self.used += 1
        if self.used > self.limit:
            raise RedactionBudgetExceeded(f"Redaction exceeded {self.limit} scan operations")

def _cascade(text: str, rules: Iterable[RedactionRule], budget: _Budget):
    out = text
    entities: List[Entity] = []
    for rule in rules:
        pos = 0
        while pos <= len(out):
            m = rule.pattern.search(out, pos)
            if m is None:
                break
            budget.tick()
            start, end = m.span()
            if start == end:
                pos = start + 1
                continue
            entities.append(Entity(rule.name, start, end))
            out = out[:start] + rule.placeholder + out[end:]
            pos = start + len(rule.placeholder)
    return out, entities

def _anchored(text: str, rules: Iterable[RedactionRule], budget: _Budget):
    taken: List[tuple] = []  # (start, end, rule)
    for rule in rules:
        pos = 0
        while pos <= len(text):
            m = rule.pattern.search(text, pos)
            if m is None:
                break
            budget.tick()
            start, end = m.span()
            if start == end:
                pos = start + 1
                continue
            if not any(s < end and start < e for s, e, _ in taken):
                taken.append((start, end, rule))
            pos = end
    taken.sort(key=lambda t: t[0])

    parts: List[str] = []
    last = 0
    for start, end, rule in taken:
        parts.append(text[last:start])
        parts.append(rule.placeholder)
        last = end
    parts.append(text[last:])
    return "".join(parts), [Entity(rule.name, s, e) for s, e, rule in taken]

def regex_redact(text: str, rules: Sequence[RedactionRule] = RULES, *,
                 original_offsets: bool = False, max_steps: int = MAX_SCAN_STEPS) -> RedactionResult:
    if not text:
        return RedactionResult(redacted_text=text or "")
    check_size(text)

    budget = _Budget(max_steps)
    if original_offsets:
        redacted, entities = _anchored(text, rules, budget)
    else:
        redacted, entities = _cascade(text, rules, budget)

    entities.sort(key=lambda e: e.start)
    counts = Counter(e.type for e in entities)
    return RedactionResult(redacted_text=redacted, entities=entities, counts=dict(counts))

# ---------- synthetic samples ----------

VERTICALS = ("health", "legal", "ops")

_TEMPLATES = {
    "health": """This is a sample visit note prepared for demonstration.

Patient [NAME] was seen on [DATE] for a routine checkup.
Contact details on file: [EMAIL] and [PHONE].
Medical record number: [ID].

The patient reported feeling well with no new concerns.
Vital signs were within normal limits. The patient will continue
current medications and return in six months.

A follow-up visit is booked for [DATE].
Questions can be sent to [EMAIL] or [PHONE].

This sample shows how redaction keeps the structure of a clinical
note while removing identifying details.""",
    "legal": """Sample legal consultation

Client [NAME] met with counsel on [DATE] to review a contract.
Contact details: [EMAIL] and [PHONE].

Matter: review of employment agreement terms.
Case reference: [ID].

Analysis: standard clauses are present, with suggested edits.
Timeline: follow-up scheduled for [DATE].

For further help, contact the [ORG] legal team.
This sample shows legal document redaction.""",
    "ops": """Sample operations report

Team member [NAME] finished onboarding on [DATE].
Reach out via [EMAIL] or [PHONE] to coordinate.

Task: scheduled maintenance and performance review.
Reference: [ID].

Status: all systems operational. Next review on [DATE].
Action items: update the runbook and sync with the team.

Support is provided by the [ORG] operations team.
This sample shows operational report redaction.""",
}

def synthetic_template(vertical: Optional[str] = "health") -> str:
    return _TEMPLATES.get((vertical or "health").lower(), _TEMPLATES["health"])

def validate_pattern_safety() -> dict:
    """Run the cascade against adversarial inputs; used by the health check and tests."""
    issues: List[str] = []

    garbage = "a" * 10_000 + "b" * 10_000
    try:
        if regex_redact(garbage).entities:
            issues.append("Patterns matched in garbage string - possible false positives")
    except Exception as e:
        issues.append(f"Pattern safety test failed: {e}")

    nested = "a@b.c a@b.c a@b.c " * 1000
    try:
        regex_redact(nested)
    except Exception as e:
        issues.append(f"Nested pattern test failed: {e}")

    return {"safe": not issues, "issues": issues}

# ---------- Presidio enrichment ----------

ANONYMIZERS = {
    "DEFAULT": {"type": "replace", "new_value": "[REDACTED]"},
    "PERSON": {"type": "replace", "new_value": "[NAME]"},
    "EMAIL_ADDRESS": {"type": "replace", "new_value": "[EMAIL]"},
    "PHONE_NUMBER": {"type": "replace", "new_value": "[PHONE]"},
    "DATE_TIME": {"type": "replace", "new_value": "[DATE]"},
    "ORGANIZATION": {"type": "replace", "new_value": "[ORG]"},
}

def merge_entities(base: RedactionResult, items: Iterable[dict]) -> tuple:
    """Add external findings that do not overlap a regex entity; regex wins on conflict."""
    merged = list(base.entities)
    counts = dict(base.counts)
    for item in items:
        try:
            start, end, etype = int(item["start"]), int(item["end"]), str(item["entity_type"])
        except (KeyError, TypeError, ValueError):
            continue
        if any(e.start < end and start < e.end for e in merged):
            continue
        merged.append(Entity(etype, start, end))
        counts[etype] = counts.get(etype, 0) + 1
    merged.sort(key=lambda e: e.start)
    return merged, counts

async def _analyze(client: httpx.AsyncClient, url: str, text: str, ctx: Optional[TraceContext]) -> httpx.Response:
    body = {"text": text, "language": "en"}
    try:
        return await client.post(url, json=body, timeout=ANALYZER_TIMEOUT)
    except httpx.TransportError as e:
        logger.info(f"[redact] presidio_retry trace={ctx} error={e!r}")
        return await client.post(url, json=body, timeout=ANALYZER_RETRY_TIMEOUT)

async def enrich_with_presidio(text: str, base: RedactionResult, *,
                               ctx: Optional[TraceContext] = None,
                               client: Optional[httpx.AsyncClient] = None) -> Optional[RedactionResult]:
    """Second opinion from Presidio. Returns None on any failure; callers keep the regex result."""
    settings = get_settings()
    owns_client = client is None
    client = client or httpx.AsyncClient()
    try:
        analyzed = await _analyze(client, settings.presidio_analyzer_url, text, ctx)
        if analyzed.status_code != 200:
            logger.info(f"[redact] presidio_analyzer_status trace={ctx} status={analyzed.status_code}")
            return None

        anonymized = await client.post(
            settings.presidio_anonymizer_url,
            json={"text": text, "analyzer_results": analyzed.json(), "anonymizers": ANONYMIZERS},
            timeout=ANONYMIZER_TIMEOUT,
        )
        if anonymized.status_code != 200:
            logger.info(f"[redact] presidio_anonymizer_status trace={ctx} status={anonymized.status_code}")
            return None

        data = anonymized.json()
        if not isinstance(data, dict):
            logger.warning(f"[redact] presidio_failed trace={ctx} fallback=regex error=unexpected body type {type(data).__name__}")
            return None
        items = data.get("items")
        text_out = data.get("text")
        entities, counts = merge_entities(base, items if isinstance(items, list) else [])
        logger.info(f"[redact] presidio_success trace={ctx} entities={len(entities)}")
        return RedactionResult(
            redacted_text=text_out if isinstance(text_out, str) and text_out else base.redacted_text,
            entities=entities,
            counts=counts,
            used_presidio=True,
        )
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"[redact] presidio_failed trace={ctx} fallback=regex error={e!r}")
        return None
    finally:
        if owns_client:
            await client.aclose()

async def redact(text: str, *, ctx: Optional[TraceContext] = None, synthetic: bool = False,
                 vertical: Optional[str] = None, client: Optional[httpx.AsyncClient] = None) -> RedactionResult:
    settings = get_settings()
    check_size(text)
    t0 = time.perf_counter()

    if not settings.redaction_enabled:
        logger.info(f"[redact] redaction_bypass trace={ctx} reason=feature_disabled")
        return RedactionResult(redacted_text=text, bypassed=True, synthetic=synthetic)

    if synthetic:
        logger.info(f"[redact] synthetic_mode trace={ctx} vertical={vertical or 'health'}")
        result = regex_redact(synthetic_template(vertical))
        result.synthetic = True
        return result

    result = regex_redact(text, original_offsets=settings.redaction_original_offsets)

    if settings.presidio_configured:
        enriched = await enrich_with_presidio(text, result, ctx=ctx, client=client)
        if enriched is not None:
            return enriched
    else:
        logger.debug(f"[redact] presidio_skipped trace={ctx}")

    logger.info(
        f"[redact] regex_complete trace={ctx} ms={ms_since(t0)} "
        f"entities={len(result.entities)} by_type={result.counts} input_len={len(text)}"
    )
    return result
