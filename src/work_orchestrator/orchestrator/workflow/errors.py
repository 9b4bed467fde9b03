"""Error taxonomy for the orchestration core.

Ledger and matcher errors are raised synchronously to the caller. Engine errors
are recorded into the execution (status + error_message) and never escape
`ChainExecutionEngine.advance`.
"""

from __future__ import annotations

NOT_ALLOWED = "not_allowed"
TERMINAL_STATUS = "terminal_status"
UNKNOWN_SUBJECT_TYPE = "unknown_subject_type"
AGENT_RESTRICTED = "agent_restricted"
COMMENT_REQUIRED = "comment_required"


class InvalidTransition(ValueError):
    """Raised by the ledger when a status change violates the rule table."""

    def __init__(self, reason: str, from_status: str | None, to_status: str) -> None:
        self.reason = reason
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.reason == TERMINAL_STATUS:
            return f"Cannot transition from terminal status '{self.from_status}'"
        if self.reason == AGENT_RESTRICTED:
            return (
                f"AI agents cannot transition from '{self.from_status}' to '{self.to_status}'; "
                "a human must perform this transition"
            )
        if self.reason == COMMENT_REQUIRED:
            return f"A comment is required to transition to '{self.to_status}'"
        if self.reason == UNKNOWN_SUBJECT_TYPE:
            return "No transition rules are registered for this subject type"
        return f"Cannot transition from '{self.from_status}' to '{self.to_status}'"


class ChainExecutionError(Exception):
    """Base class for failures recorded into a chain execution."""


class PreconditionFailed(ChainExecutionError):
    pass


class PostconditionFailed(ChainExecutionError):
    pass


class ExecutorFailure(ChainExecutionError):
    """The step executor reported an error or raised."""


class StepTimeout(ExecutorFailure):
    pass


class ConcurrentModification(Exception):
    """An execution record changed between load and commit."""

    def __init__(self, execution_id: str, expected_version: int, actual_version: int) -> None:
        super().__init__(
            f"Execution {execution_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.execution_id = execution_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class IllegalExecutionTransition(ValueError):
    pass


class ExecutionNotPaused(Exception):
    pass


class GateStateError(Exception):
    pass


class NotFound(LookupError):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
