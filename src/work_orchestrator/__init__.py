"""Work Orchestrator.

Status transitions on work items (tasks, work orders) that trigger multi-step,
agent-driven chains which can pause for approval, resume and be replayed.
"""

__version__ = "0.1.0"

from work_orchestrator.orchestrator.config import OrchestratorSettings

__all__ = ["__version__", "OrchestratorSettings"]
