# voicenotes/services/emailer.py
import html
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from ..config import get_settings
from ..db import DATA_DIR
from ..errors import EmailSendError
from ..tracing import TraceContext, new_trace_id

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# --- Dev outbox (used when no Resend key is configured) ---
OUTBOX_DIR = DATA_DIR / "outbox" / "email"

def is_valid_email(value: Optional[str]) -> bool:
    return bool(value) and bool(EMAIL_RE.match(value.strip()))

@dataclass(frozen=True)
class ComposedEmail:
    subject: str
    html: str
    text: str

@dataclass(frozen=True)
class EmailResult:
    message_id: Optional[str]
    upstream_status: Optional[int]

    @property
    def duplicate(self) -> bool:
        return self.upstream_status == 409

def compose_summary_email(summary, trace_id: str) -> ComposedEmail:
    """Render the summary as HTML + plain text. `summary` is a SummaryPayload or Summary row."""
    settings = get_settings()
    title = getattr(summary, "title", None) or "Summary"
    body = getattr(summary, "summary", "") or ""
    bullets = list(getattr(summary, "bullets", None) or [])
    actions = list(getattr(summary, "action_items", None) or [])
    tags = list(getattr(summary, "tags", None) or [])

    e = html.escape
    def _ul(items):
        return "<ul>" + "".join(f"<li>{e(i)}</li>" for i in items) + "</ul>"

    parts = [f"<h2>{e(title)}</h2>", "<h3>Summary</h3>", f"<p>{e(body)}</p>"]
    text = [title, "", "Summary", body]
    if bullets:
        parts += ["<h3>Key Points</h3>", _ul(bullets)]
        text += ["", "Key Points"] + [f"- {b}" for b in bullets]
    if actions:
        parts += ["<h3>Action Items</h3>", _ul(actions)]
        text += ["", "Action Items"] + [f"- {a}" for a in actions]
    if tags:
        parts += ["<h3>Tags</h3>", f"<p>{e(', '.join(tags))}</p>"]
        text += ["", "Tags", ", ".join(tags)]

    footer = f"Generated by {settings.from_name} • Trace ID: {trace_id}"
    parts.append(f"<hr><p style='color:#888;font-size:12px'>{e(footer)}</p>")
    text += ["", "--", footer]

    return ComposedEmail(
        subject=f"Your {settings.from_name} summary — {title}",
        html="\n".join(parts),
        text="\n".join(text),
    )

def _dev_write(to_email: str, message: ComposedEmail, idempotency_key: str) -> str:
    OUTBOX_DIR.mkdir(parents=True, exist_ok=True)
    safe_to = to_email.replace("@", "_at_")
    fname = OUTBOX_DIR / f"email_to={safe_to}_{idempotency_key}.eml"
    lines = [f"TO: {to_email}", f"SUBJECT: {message.subject}", f"IDEMPOTENCY-KEY: {idempotency_key}", ""]
    lines.append(message.text)
    lines.append("\n[HTML PART]\n" + message.html)
    fname.write_text("\n".join(lines), encoding="utf-8")
    return f"dev-{new_trace_id()}"

async def send_summary_email(to_email: str, message: ComposedEmail, ctx: TraceContext, *,
                             client: Optional[httpx.AsyncClient] = None) -> EmailResult:
    """
    Primary: Resend, with an Idempotency-Key derived from the trace id.
    409 from Resend means the key was already used: a duplicate, not a failure.
    Not configured: dev outbox file.
    """
    settings = get_settings()
    idempotency_key = f"sv-email-{ctx.trace_id}"

    if not (settings.resend_key and settings.from_email):
        path_id = _dev_write(to_email, message, idempotency_key)
        logger.info(f"[emailer] resend not configured; wrote dev outbox to={to_email} trace={ctx}")
        return EmailResult(message_id=path_id, upstream_status=None)

    data = {
        "from": f"{settings.from_name} <{settings.from_email}>",
        "to": [to_email],
        "subject": message.subject,
        "html": message.html,
        "text": message.text,
    }
    if settings.reply_to:
        data["reply_to"] = settings.reply_to

    headers = {
        "Authorization": f"Bearer {settings.resend_key}",
        "Content-Type": "application/json",
        "Idempotency-Key": idempotency_key,
    }
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=30)
    try:
        r = await client.post(RESEND_URL, headers=headers, json=data)
    except httpx.HTTPError as e:
        raise EmailSendError(f"Resend request failed: {e}") from e
    finally:
        if owns_client:
            await client.aclose()

    if r.status_code == 409:
        logger.info(f"[emailer] duplicate suppressed key={idempotency_key} trace={ctx}")
        return EmailResult(message_id=None, upstream_status=409)
    if r.status_code >= 300:
        raise EmailSendError(
            f"Resend failed: {r.status_code} {r.text}", upstream_status=r.status_code, upstream_body=r.text
        )
    try:
        message_id = (r.json() or {}).get("id")
    except ValueError:
        message_id = None
    logger.info(f"[emailer] sent id={message_id} to={to_email} trace={ctx}")
    return EmailResult(message_id=message_id, upstream_status=r.status_code)
