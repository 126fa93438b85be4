# voicenotes/db.py
import logging
import os
from pathlib import Path
from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

DATA_DIR = Path(os.getenv("DATA_DIR") or Path(__file__).resolve().parents[1] / "data")

DATABASE_URL = (os.getenv("DATABASE_URL") or "").strip()
ALLOW_SQLITE_FALLBACK = os.getenv("DB_ALLOW_SQLITE_FALLBACK", "1") == "1"

def _pg_url(url: str) -> str:
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg://", 1)
    elif url.startswith("postgresql://") and "+psycopg" not in url:
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url

def _try_pg_engine():
    if not DATABASE_URL:
        return None
    try:
        eng = create_engine(_pg_url(DATABASE_URL), pool_pre_ping=True)
        with eng.connect() as conn:
            conn.execute(text("SELECT 1"))
        return eng
    except Exception as e:
        logger.error(f"[db] Postgres connect failed: {e!r}")
        if not ALLOW_SQLITE_FALLBACK:
            raise
        return None

def _sqlite_engine():
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    return create_engine(f"sqlite:///{DATA_DIR / 'voicenotes.db'}", echo=False)

_engine: Engine | None = None

def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = _try_pg_engine() or _sqlite_engine()
    return _engine

def set_engine(engine: Engine) -> None:
    """Swap the process-wide engine (tests use an in-memory SQLite engine)."""
    global _engine
    _engine = engine

def init_db():
    from . import models  # noqa: F401  registers tables
    SQLModel.metadata.create_all(get_engine())

def get_session() -> Session:
    return Session(get_engine(), expire_on_commit=False)
