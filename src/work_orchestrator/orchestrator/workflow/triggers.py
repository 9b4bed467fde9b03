"""Trigger matching: which chains should fire for a transition event."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, field_validator

from .conditions import conditions_hold, deduplication_window_minutes, parse_conditions
from .events import TransitionOccurred

if TYPE_CHECKING:
    from work_orchestrator.state.stores import ChainStore, TriggerStore

logger = logging.getLogger(__name__)


class Trigger(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str = ""
    entity_type: str
    status_from: str | None = Field(default=None, description="None matches any status")
    status_to: str | None = Field(default=None, description="None matches any status")
    chain_id: str
    conditions: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    priority: int = 0
    last_triggered_at: datetime | None = None

    @field_validator("conditions")
    @classmethod
    def _conditions_parse(cls, value: dict[str, Any]) -> dict[str, Any]:
        parse_conditions(value)
        return value

    def matches_transition(self, from_status: str | None, to_status: str | None) -> bool:
        from_ok = self.status_from is None or self.status_from == from_status
        to_ok = self.status_to is None or self.status_to == to_status
        return from_ok and to_ok


@dataclass(frozen=True, slots=True)
class TriggerMatch:
    trigger: Trigger
    suppressed: bool = False


StartChain = Callable[[Trigger, TransitionOccurred], object]


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class TriggerMatcher:
    """Finds enabled triggers for a transition and dispatches them.

    Matches are ordered by descending priority; ties keep store (definition)
    order. A trigger fired within its deduplication window is matched but
    suppressed.
    """

    def __init__(
        self,
        triggers: TriggerStore,
        *,
        chains: ChainStore | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._triggers = triggers
        self._chains = chains
        self._clock = clock

    def find_matches(self, event: TransitionOccurred) -> list[TriggerMatch]:
        now = self._clock()
        candidates: list[Trigger] = []
        for trigger in self._triggers.all():
            if not trigger.enabled or trigger.entity_type != event.subject_type:
                continue
            if not trigger.matches_transition(event.from_status, event.to_status):
                continue
            if not conditions_hold(
                trigger.conditions, event.subject, entity_type=event.subject_type
            ):
                continue
            if self._chains is not None:
                chain = self._chains.get(trigger.chain_id)
                if chain is None or not chain.enabled:
                    logger.debug(
                        "Trigger chain missing or disabled",
                        extra={"trigger_id": trigger.id, "chain_id": trigger.chain_id},
                    )
                    continue
            candidates.append(trigger)

        # sorted() is stable, so equal priorities keep definition order.
        ordered = sorted(candidates, key=lambda t: -t.priority)
        return [TriggerMatch(trigger=t, suppressed=self._within_window(t, now)) for t in ordered]

    def dispatch(self, event: TransitionOccurred, start: StartChain) -> list[Trigger]:
        """Start a chain for every unsuppressed match, in order.

        `last_triggered_at` is updated after each successful start.
        """

        dispatched: list[Trigger] = []
        matches = self.find_matches(event)
        if not matches:
            logger.debug(
                "No matching triggers",
                extra={
                    "subject": f"{event.subject_type}:{event.subject_id}",
                    "from_status": event.from_status,
                    "to_status": event.to_status,
                },
            )
            return dispatched

        for match in matches:
            trigger = match.trigger
            if match.suppressed:
                logger.info(
                    "Trigger suppressed by deduplication window",
                    extra={"trigger_id": trigger.id, "subject_id": event.subject_id},
                )
                continue
            logger.info(
                "Dispatching chain trigger",
                extra={
                    "trigger_id": trigger.id,
                    "trigger_name": trigger.name,
                    "chain_id": trigger.chain_id,
                    "subject_id": event.subject_id,
                    "priority": trigger.priority,
                },
            )
            start(trigger, event)
            dispatched.append(self._triggers.touch_last_triggered(trigger.id, self._clock()))
        return dispatched

    @staticmethod
    def _within_window(trigger: Trigger, now: datetime) -> bool:
        window = deduplication_window_minutes(trigger.conditions)
        if window is None or trigger.last_triggered_at is None:
            return False
        return trigger.last_triggered_at > now - timedelta(minutes=window)
