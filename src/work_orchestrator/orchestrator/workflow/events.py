from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TransitionOccurred:
    """A signal emitted after the ledger records a status change.

    `subject` is a snapshot of the entity taken after the change; trigger
    conditions are evaluated against it. Events never perform work.
    """

    subject_type: str
    subject_id: str
    from_status: str | None
    to_status: str | None
    subject: dict[str, Any] = field(default_factory=dict)
    actor_id: str | None = None


class EventSink(Protocol):
    def publish(self, event: TransitionOccurred) -> None: ...


Handler = Callable[[TransitionOccurred], None]


class EventBus:
    """In-process event sink.

    Handlers run synchronously in the publisher's thread, in subscription
    order. Per-subject ordering comes from the publisher holding the ledger
    lock while it publishes.
    """

    def __init__(self) -> None:
        self._handlers: list[Handler] = []
        self._lock = threading.RLock()

    def subscribe(self, handler: Handler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def publish(self, event: TransitionOccurred) -> None:
        with self._lock:
            handlers = list(self._handlers)
            for handler in handlers:
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "Transition event handler failed",
                        extra={
                            "subject": f"{event.subject_type}:{event.subject_id}",
                            "to_status": event.to_status,
                        },
                    )
