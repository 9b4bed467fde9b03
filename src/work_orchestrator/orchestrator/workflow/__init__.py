"""Workflow domain concepts.

This package holds first-class types for:
- Status transition rules and the ledger that records them
- Transition events and the triggers they match
- Chain definitions and the engine that executes them step by step
- Pause gates for human approval

Control flow is deterministic and every durable change is recorded, so a chain
execution can be inspected, resumed after a pause and recovered after a crash.
"""

__all__: list[str] = []
