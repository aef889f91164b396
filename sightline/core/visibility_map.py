"""
Visibility Map Store - Canonical observer -> target -> state table.

Only a completed batch pass (automatic writes) and explicit override
application (manual writes) write here; everything else reads. Absent
entries read as `observed`. Each entry remembers whether it was written
automatically so consumers can tell provenance apart without consulting
the override store.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable

from .state import PairKey, VisibilityState


@dataclass
class MapEntry:
    state: VisibilityState
    is_automatic: bool = True


@dataclass
class MapUpdate:
    """One pending write produced by a batch pass."""
    observer_id: str
    target_id: str
    state: VisibilityState
    previous: VisibilityState = VisibilityState.OBSERVED

    @property
    def key(self) -> PairKey:
        return PairKey(self.observer_id, self.target_id)


class VisibilityMapStore:
    """
    In-memory visibility table, nested by observer.
    """

    def __init__(self):
        self._entries: dict[str, dict[str, MapEntry]] = {}

    def get(self, observer_id: str, target_id: str) -> VisibilityState:
        entry = self._entries.get(observer_id, {}).get(target_id)
        return entry.state if entry else VisibilityState.OBSERVED

    def is_automatic(self, observer_id: str, target_id: str) -> bool | None:
        """Provenance of an entry, or None if absent."""
        entry = self._entries.get(observer_id, {}).get(target_id)
        return entry.is_automatic if entry else None

    def set(
        self,
        observer_id: str,
        target_id: str,
        state: VisibilityState,
        is_automatic: bool = False,
    ) -> bool:
        """Write one entry. Returns True if the stored value changed."""
        previous = self.get(observer_id, target_id)
        self._entries.setdefault(observer_id, {})[target_id] = MapEntry(
            state=state,
            is_automatic=is_automatic,
        )
        return previous != state

    def apply(self, updates: Iterable[MapUpdate], is_automatic: bool = True) -> int:
        """Write a batch of updates in one step. Returns the count written."""
        count = 0
        for update in updates:
            self._entries.setdefault(update.observer_id, {})[update.target_id] = MapEntry(
                state=update.state,
                is_automatic=is_automatic,
            )
            count += 1
        return count

    def delete_all_for(self, token_id: str) -> int:
        """Remove every entry where the token is observer or target."""
        removed = len(self._entries.pop(token_id, {}))
        for targets in self._entries.values():
            if targets.pop(token_id, None) is not None:
                removed += 1
        return removed

    def delete_automatic_for(self, token_id: str) -> list[PairKey]:
        """Remove automatic entries touching the token; manual ones stay."""
        removed = []
        for observer_id, targets in list(self._entries.items()):
            for target_id, entry in list(targets.items()):
                if token_id not in (observer_id, target_id) or not entry.is_automatic:
                    continue
                del targets[target_id]
                removed.append(PairKey(observer_id, target_id))
            if not targets:
                del self._entries[observer_id]
        return removed

    def get_map(self, observer_id: str) -> dict[str, VisibilityState]:
        """All stored targets for an observer."""
        return {
            target_id: entry.state
            for target_id, entry in self._entries.get(observer_id, {}).items()
        }

    def pairs(self) -> list[PairKey]:
        return [
            PairKey(observer_id, target_id)
            for observer_id, targets in self._entries.items()
            for target_id in targets
        ]

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return sum(len(targets) for targets in self._entries.values())
