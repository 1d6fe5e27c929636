from __future__ import annotations

from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from backend.app.core.error_catalog import ConflictError
from backend.app.db.models.models_v1 import DocumentSequence


def next_number(db: Session, prefix: str, *, today: date | None = None) -> str:
    """
    Allocate the next ``{prefix}-{year}-{seq:04d}`` number.

    The counter row is locked (FOR UPDATE) and version-checked, and lives in
    the caller's transaction: a rolled back dispatch gives its number back,
    and two writers can never read the same value and both commit.
    """
    year = (today or date.today()).year
    seq = (
        db.execute(
            select(DocumentSequence)
            .where(DocumentSequence.prefix == prefix)
            .where(DocumentSequence.year == year)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        .scalar_one_or_none()
    )
    if seq is None:
        # a concurrent first insert surfaces as IntegrityError at commit
        seq = DocumentSequence(prefix=prefix, year=year, last_value=0)
        db.add(seq)

    seq.last_value += 1
    try:
        db.flush()
    except StaleDataError as exc:
        raise ConflictError(
            "Document number sequence was modified concurrently",
            details={"prefix": prefix, "year": year},
        ) from exc
    return f"{prefix}-{year}-{seq.last_value:04d}"
