from __future__ import annotations

import json

from sqlalchemy.orm import Session

from backend.app.db.models.models_v1 import AuditLog


def record(
    db: Session,
    *,
    action: str,
    entity_type: str,
    entity_id,
    actor: str | None = None,
    meta: dict | None = None,
) -> AuditLog:
    """Append an audit row inside the caller's transaction."""
    entry = AuditLog(
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        meta=json.dumps(meta, ensure_ascii=False, default=str) if meta else None,
    )
    db.add(entry)
    return entry
