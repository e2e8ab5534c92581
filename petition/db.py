from __future__ import annotations

import threading
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from petition.config import get_settings
from petition.models import Base

_lock = threading.Lock()
_engine = None
_SessionLocal = None


def init_db(db_path: str | Path | None = None) -> None:
    """Create (or reopen) the database. ``DATABASE_URL`` wins over a file path."""
    global _engine, _SessionLocal
    settings = get_settings()
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None and settings.database_url:
            url = settings.database_url
        else:
            db_path = Path(db_path or settings.db_path)
            db_path.parent.mkdir(parents=True, exist_ok=True)
            url = f"sqlite:///{db_path}"
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        _engine = create_engine(url, connect_args=connect_args)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        seed_prompts(_engine)


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


def seed_prompts(engine) -> None:
    """Insert default agent prompts whose key is not stored yet."""
    from petition.prompts import DEFAULT_PROMPTS
    with engine.begin() as conn:
        existing = {row[0] for row in conn.execute(text("SELECT key FROM agent_prompts"))}
        for key, (label, content) in DEFAULT_PROMPTS.items():
            if key in existing:
                continue
            conn.execute(text(
                "INSERT INTO agent_prompts (key, label, content, updated_at) "
                "VALUES (:key, :label, :content, CURRENT_TIMESTAMP)"
            ), {"key": key, "label": label, "content": content})
