"""Trigger engine — build lifecycle and downstream orchestration.

Key exports:
    TriggerOrchestrator — trigger_event(), trigger_next_jobs()
    BuildLifecycle — Create/merge/remove/start single builds
    StartBuildCallback — Protocol for the executor integration point
"""

from cascade.engine.lifecycle import BuildLifecycle, StartBuildCallback
from cascade.engine.orchestrator import TriggerOrchestrator

__all__ = [
    "TriggerOrchestrator",
    "BuildLifecycle",
    "StartBuildCallback",
]
