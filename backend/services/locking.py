"""
Keyed critical sections.

Two independent domains: one lock per order, one lock per product spec.
Unrelated orders and unrelated specs never wait on each other. Locks are
re-entrant so a service already holding a key can call into the ledger,
which takes the same key again.

On PostgreSQL the same rows are additionally locked with SELECT ... FOR
UPDATE, which covers writers living in other processes.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterable, Iterator

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from backend.app.core.error_catalog import ConflictError


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class KeyedLocks:
    """
    One re-entrant lock per key, created on first use.

    A key's lock is dropped as soon as no thread holds or waits for it, so
    the table only ever contains keys that are in use.
    """

    def __init__(self, name: str):
        self.name = name
        self._guard = threading.Lock()
        self._locks: dict[str, _KeyLock] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _acquire(self, key: str) -> _KeyLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _KeyLock()
                self._locks[key] = entry
            entry.users += 1
        entry.lock.acquire()
        return entry

    def _release(self, key: str, entry: _KeyLock) -> None:
        entry.lock.release()
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        # sorted acquisition order keeps multi-key holders deadlock free
        acquired: list[tuple[str, _KeyLock]] = []
        try:
            for key in sorted(set(keys)):
                acquired.append((key, self._acquire(key)))
            yield
        finally:
            for key, entry in reversed(acquired):
                self._release(key, entry)


order_locks = KeyedLocks("order")
spec_locks = KeyedLocks("spec")


def order_key(order_id: int) -> str:
    return f"order:{int(order_id)}"


@contextmanager
def locked_transaction(
    db: Session,
    *,
    order_ids: Iterable[int] = (),
    specs: Iterable = (),
) -> Iterator[None]:
    """
    Run a block as one transaction while holding the order and spec locks.

    Locks are taken order first, then specs, and released only after
    commit or rollback. Any error rolls the whole block back.
    """
    with order_locks.hold(*(order_key(oid) for oid in order_ids)):
        with spec_locks.hold(*(spec.key for spec in specs)):
            try:
                yield
                db.commit()
            except (StaleDataError, IntegrityError) as exc:
                db.rollback()
                raise ConflictError(details={"type": exc.__class__.__name__}) from exc
            except Exception:
                db.rollback()
                raise
