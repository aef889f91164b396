"""
Engine - Reactive recomputation around the visibility calculator.

Flow:
    World event -> ChangeDetector -> BatchScheduler (next tick)
        -> pass over dirty tokens -> VisibilityMapStore -> RefreshNotifier
    Significant move -> OverrideValidator (debounced)

VisibilityService wires one instance of everything per scene.
"""

from .notifier import RefreshNotifier
from .scheduler import BatchScheduler, BatchResult, SchedulerState
from .detector import ChangeDetector, PERCEPTION_KEYWORDS
from .service import VisibilityService

__all__ = [
    "RefreshNotifier",
    "BatchScheduler",
    "BatchResult",
    "SchedulerState",
    "ChangeDetector",
    "PERCEPTION_KEYWORDS",
    "VisibilityService",
]
