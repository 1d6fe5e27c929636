"""
Dispatch events for downstream consumers (invoicing, SMS, ERP export).

Events are published only after the dispatch transaction has committed, and
carry identifiers only: consumers load the record themselves and must never
mutate dispatch or stock state. A failing consumer is logged and does not
affect the engine or other consumers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


class Event:
    pass


@dataclass(frozen=True)
class DispatchExecuted(Event):
    dispatch_id: int
    human_number: str
    order_id: int


Handler = Callable[[Event], None]

_handlers: list[Handler] = []


def subscribe(handler: Handler) -> Callable[[], None]:
    _handlers.append(handler)

    def unsubscribe() -> None:
        if handler in _handlers:
            _handlers.remove(handler)

    return unsubscribe


def publish(event: Event) -> None:
    for handler in list(_handlers):
        try:
            handler(event)
        except Exception:
            logger.exception(
                "Dispatch event consumer failed",
                extra={"event": type(event).__name__, "handler": getattr(handler, "__name__", repr(handler))},
            )
