"""
Core - State types, world queries, the calculator and the map store.

Everything here is synchronous and side-effect free, except the map
store, which only the batch scheduler and override application write to.
"""

from .state import (
    NAMESPACE,
    VisibilityState,
    CoverState,
    LightLevel,
    OverrideSource,
    OverrideRecord,
    PairKey,
    Token,
    VisionCapabilities,
    is_excluded,
)
from .events import EventBus, EventName, ChangeAction, WorldEvent
from .world import InMemoryWorld, LightSource, Wall, WorldState
from .calculator import VisibilityCalculator
from .visibility_map import VisibilityMapStore, MapUpdate

__all__ = [
    "NAMESPACE",
    "VisibilityState",
    "CoverState",
    "LightLevel",
    "OverrideSource",
    "OverrideRecord",
    "PairKey",
    "Token",
    "VisionCapabilities",
    "is_excluded",
    "EventBus",
    "EventName",
    "ChangeAction",
    "WorldEvent",
    "InMemoryWorld",
    "LightSource",
    "Wall",
    "WorldState",
    "VisibilityCalculator",
    "VisibilityMapStore",
    "MapUpdate",
]
