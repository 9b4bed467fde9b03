"""Status transition ledger.

Validates status changes against the rule table and records each accepted one
as an immutable `TransitionRecord`. The ledger touches nothing but the subject
and its own history; publishing the transition is the caller's job.

Each record is paired with the `TransitionOccurred` event built while the
record was written, so the event's subject snapshot reflects that record and
not a later one. A caller that publishes holds `ledger.lock` across the write
and the publish; events for a subject then leave in `sequence` order.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from .errors import AGENT_RESTRICTED, COMMENT_REQUIRED, InvalidTransition
from .events import TransitionOccurred
from .models import Actor, SubjectRef, TransitionRecord, utc_now
from .state_machine import (
    AGENT_RESTRICTED_TRANSITIONS,
    REVISION_RETURN_STATUS,
    TASK,
    TIMER_REOPEN_FROM,
    TransitionRuleRegistry,
)

logger = logging.getLogger(__name__)

REVISION_REQUESTED = "revision_requested"
AUTO_REVISION_COMMENT = "Auto-transition from revision requested"
TIMER_REOPEN_COMMENT = "Timer started - task reopened for work"


class SubjectRepository(Protocol):
    def get_status(self, ref: SubjectRef) -> str: ...

    def set_status(self, ref: SubjectRef, status: str) -> None: ...

    def get_snapshot(self, ref: SubjectRef) -> dict[str, Any]: ...


class TransitionHistory(Protocol):
    def append(self, record: TransitionRecord) -> TransitionRecord: ...

    def for_subject(self, ref: SubjectRef) -> list[TransitionRecord]: ...

    def next_sequence(self, ref: SubjectRef) -> int: ...


@dataclass(frozen=True, slots=True)
class AppliedTransition:
    record: TransitionRecord
    event: TransitionOccurred


class TransitionLedger:
    def __init__(
        self,
        *,
        rules: TransitionRuleRegistry,
        subjects: SubjectRepository,
        history: TransitionHistory,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._rules = rules
        self._subjects = subjects
        self._history = history
        self._clock = clock
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        """Re-entrant lock guarding every write; hold it while publishing the events."""

        return self._lock

    def validate(
        self,
        subject: SubjectRef,
        actor: Actor,
        to_status: str,
        comment: str | None = None,
    ) -> str:
        """Raise `InvalidTransition` unless the change is legal. Returns the current status."""

        from_status = self._subjects.get_status(subject)
        rule_set = self._rules.require(subject.type, from_status=from_status, to_status=to_status)
        rule_set.check(from_status, to_status)

        if actor.kind == "agent":
            restricted = AGENT_RESTRICTED_TRANSITIONS.get(subject.type, set())
            if (from_status, to_status) in restricted:
                raise InvalidTransition(AGENT_RESTRICTED, from_status, to_status)

        if to_status == REVISION_REQUESTED and not (comment or "").strip():
            raise InvalidTransition(COMMENT_REQUIRED, from_status, to_status)

        return from_status

    def can_transition(
        self, subject: SubjectRef, actor: Actor, to_status: str, comment: str | None = None
    ) -> bool:
        try:
            self.validate(subject, actor, to_status, comment)
        except InvalidTransition:
            return False
        return True

    def transition(
        self,
        subject: SubjectRef,
        actor: Actor,
        to_status: str,
        comment: str | None = None,
    ) -> TransitionRecord:
        return self.apply(subject, actor, to_status, comment)[0]

    def apply(
        self,
        subject: SubjectRef,
        actor: Actor,
        to_status: str,
        comment: str | None = None,
    ) -> list[TransitionRecord]:
        """Perform a transition and return every record it wrote.

        Entering `revision_requested` writes a second record that moves the
        subject straight back to its work status.
        """

        return [applied.record for applied in self.apply_with_events(subject, actor, to_status, comment)]

    def apply_with_events(
        self,
        subject: SubjectRef,
        actor: Actor,
        to_status: str,
        comment: str | None = None,
    ) -> list[AppliedTransition]:
        with self._lock:
            from_status = self.validate(subject, actor, to_status, comment)
            applied = [self._record(subject, actor, from_status, to_status, comment)]

            return_status = REVISION_RETURN_STATUS.get(subject.type)
            if to_status == REVISION_REQUESTED and return_status is not None:
                applied.append(
                    self._record(subject, actor, to_status, return_status, AUTO_REVISION_COMMENT)
                )

        logger.info(
            "Status transition recorded",
            extra={
                "subject": str(subject),
                "from_status": from_status,
                "to_status": applied[-1].record.to_status,
                "actor_kind": actor.kind,
                "records": len(applied),
            },
        )
        return applied

    def reopen_for_timer(self, subject: SubjectRef, actor: Actor) -> TransitionRecord:
        """Move a task back to in_progress when a timer starts, bypassing the rule table."""

        return self.reopen_for_timer_with_event(subject, actor).record

    def reopen_for_timer_with_event(self, subject: SubjectRef, actor: Actor) -> AppliedTransition:
        with self._lock:
            from_status = self._subjects.get_status(subject)
            if subject.type != TASK or from_status not in TIMER_REOPEN_FROM:
                raise InvalidTransition("not_allowed", from_status, "in_progress")
            return self._record(subject, actor, from_status, "in_progress", TIMER_REOPEN_COMMENT)

    def history(self, subject: SubjectRef) -> list[TransitionRecord]:
        return self._history.for_subject(subject)

    def _record(
        self,
        subject: SubjectRef,
        actor: Actor,
        from_status: str,
        to_status: str,
        comment: str | None,
    ) -> AppliedTransition:
        record = TransitionRecord(
            subject_type=subject.type,
            subject_id=subject.id,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor.id,
            actor_kind=actor.kind,
            comment=comment,
            occurred_at=self._clock(),
            sequence=self._history.next_sequence(subject),
        )
        self._subjects.set_status(subject, to_status)
        try:
            self._history.append(record)
        except Exception:
            # Keep status and history consistent: undo the status change.
            self._subjects.set_status(subject, from_status)
            raise

        event = TransitionOccurred(
            subject_type=record.subject_type,
            subject_id=record.subject_id,
            from_status=record.from_status,
            to_status=record.to_status,
            subject=self._subjects.get_snapshot(subject),
            actor_id=record.actor_id,
        )
        return AppliedTransition(record=record, event=event)
