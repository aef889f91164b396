"""
Storage - Namespaced per-token flag persistence.

Overrides are the only thing the engine persists. Everything else is
recomputed from the world.
"""

from .flags import FlagStorage, InMemoryFlagStorage, JsonFileFlagStorage

__all__ = [
    "FlagStorage",
    "InMemoryFlagStorage",
    "JsonFileFlagStorage",
]
