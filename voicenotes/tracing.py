# voicenotes/tracing.py
from __future__ import annotations
import secrets
import time
from dataclasses import dataclass, replace
from typing import Optional

_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"

def _base36(n: int) -> str:
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = _ALPHABET[r] + out
    return out or "0"

def new_trace_id() -> str:
    return f"{_base36(int(time.time() * 1000))}-{secrets.token_hex(3)[:5]}"

def ms_since(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)

@dataclass(frozen=True)
class TraceContext:
    """Correlation context handed to every step of a run.

    Immutable: a step that learns something new (run id, recording id)
    returns a derived context via ``with_`` rather than mutating this one.
    """

    trace_id: str
    recording_id: Optional[str] = None
    run_id: Optional[str] = None

    @classmethod
    def resolve(cls, body_trace: Optional[str] = None, header_trace: Optional[str] = None) -> "TraceContext":
        for candidate in (body_trace, header_trace):
            if candidate and str(candidate).strip():
                return cls(trace_id=str(candidate).strip())
        return cls(trace_id=new_trace_id())

    def with_(self, **changes) -> "TraceContext":
        return replace(self, **changes)

    def __str__(self) -> str:
        return self.trace_id
