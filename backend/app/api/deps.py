from __future__ import annotations

from typing import Iterator

from sqlalchemy.orm import Session

from backend.app.db.session import SessionLocal


def get_db() -> Iterator[Session]:
    """One session per request; services commit through locked_transaction."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
