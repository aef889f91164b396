"""
Override Store - Persisted, pinned visibility values per ordered pair.

Storage layout:
- Each TARGET token carries one flag per observer:
    override-from-{observer_id} -> {state, source, expectedCover, ...}
- An in-memory cache keyed by PairKey mirrors the flags

Consistency rules:
1. A write goes to storage first, then to the cache
2. A failed write leaves both untouched
3. A read prefers the cache, falls back to storage and repopulates the cache

The store is the only writer of overrides. Validation failures are
reported as a False return, never raised.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Iterable

import structlog

from ..core.state import (
    CoverState,
    OverrideRecord,
    OverrideSource,
    PairKey,
    VisibilityState,
)
from ..core.world import WorldState
from ..storage.flags import FlagStorage


log = structlog.get_logger(__name__)

FLAG_PREFIX = "override-from-"


def flag_key(observer_id: str) -> str:
    return f"{FLAG_PREFIX}{observer_id}"


@dataclass
class Provenance:
    """Why an override was set and what it assumed about the world."""
    source: OverrideSource = OverrideSource.MANUAL
    expected_cover: CoverState | None = None
    expected_concealment: bool | None = None


@dataclass
class PairChange:
    """One target's outcome from an action, used by the pair helpers."""
    target_id: str
    state: VisibilityState
    expected_cover: CoverState | None = None
    expected_concealment: bool | None = None

    def provenance(self, source: OverrideSource) -> Provenance:
        concealment = self.expected_concealment
        if concealment is None:
            concealment = self.state in (
                VisibilityState.CONCEALED,
                VisibilityState.HIDDEN,
                VisibilityState.UNDETECTED,
            )
        return Provenance(
            source=source,
            expected_cover=self.expected_cover,
            expected_concealment=concealment,
        )


class OverrideStore:
    """
    Async override store with a synchronous cache view.

    Usage:
        store = OverrideStore(world, InMemoryFlagStorage())
        await store.load()

        await store.set("a", "b", "hidden", Provenance(OverrideSource.HIDE))
        record = await store.get("a", "b")
        store.peek("a", "b")   # cache only, used by the calculator
    """

    def __init__(self, world: WorldState, storage: FlagStorage):
        self.world = world
        self.storage = storage
        self._cache: dict[PairKey, OverrideRecord] = {}

    async def load(self) -> int:
        """Populate the cache from storage. Returns the number of overrides."""
        self._cache.clear()
        for target_id in await self.storage.token_ids():
            flags = await self.storage.get_flags(target_id)
            for record in self._parse_flags(target_id, flags):
                self._cache[record.key] = record
        log.info("overrides_loaded", count=len(self._cache))
        return len(self._cache)

    # =========================================================================
    # Core operations
    # =========================================================================

    def peek(self, observer_id: str, target_id: str) -> OverrideRecord | None:
        return self._cache.get(PairKey(observer_id, target_id))

    async def set(
        self,
        observer_id: str,
        target_id: str,
        state: VisibilityState | str,
        provenance: Provenance | None = None,
    ) -> bool:
        """Pin a value for the pair, replacing any previous override."""
        pair = str(PairKey(observer_id, target_id))
        try:
            state = VisibilityState.coerce(state)
        except ValueError:
            log.warning("override_rejected", pair=pair, reason="invalid_state", state=state)
            return False

        observer = self.world.get_token(observer_id)
        target = self.world.get_token(target_id)
        if observer is None or target is None:
            log.warning(
                "override_rejected",
                pair=pair,
                reason="unknown_token",
                observer_found=observer is not None,
                target_found=target is not None,
            )
            return False

        provenance = provenance or Provenance()
        record = OverrideRecord(
            observer_id=observer_id,
            target_id=target_id,
            state=state,
            source=provenance.source,
            expected_cover=provenance.expected_cover,
            expected_concealment=provenance.expected_concealment,
            observer_name=observer.name,
            target_name=target.name,
        )

        try:
            await self.storage.set_flag(target_id, flag_key(observer_id), record.to_flag())
        except Exception as e:
            log.error("override_persist_failed", pair=pair, error=str(e), exc_info=True)
            return False

        self._cache[record.key] = record
        log.info("override_set", pair=pair, state=state.value, source=record.source.value)
        return True

    async def get(self, observer_id: str, target_id: str) -> OverrideRecord | None:
        key = PairKey(observer_id, target_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        data = await self.storage.get_flag(target_id, flag_key(observer_id))
        if not data:
            return None
        record = self._parse_one(observer_id, target_id, data)
        if record is not None:
            self._cache[key] = record
        return record

    async def remove(self, observer_id: str, target_id: str) -> bool:
        """Remove the pair's override. Returns True if one existed."""
        key = PairKey(observer_id, target_id)
        existed = key in self._cache or bool(
            await self.storage.get_flag(target_id, flag_key(observer_id))
        )
        if not existed:
            return False

        await self.storage.unset_flag(target_id, flag_key(observer_id))
        self._cache.pop(key, None)
        log.info("override_removed", pair=str(key))
        return True

    async def clear_all(self, token_id: str) -> int:
        """Remove every override where the token is observer or target."""
        removed = 0
        for record in await self.list_all(token_id):
            if await self.remove(record.observer_id, record.target_id):
                removed += 1
        return removed

    async def list_all(self, token_id: str) -> list[OverrideRecord]:
        """Every override touching the token, in either direction."""
        found: dict[PairKey, OverrideRecord] = {}
        for target_id in await self.storage.token_ids():
            flags = await self.storage.get_flags(target_id)
            for record in self._parse_flags(target_id, flags):
                if record.key.touches(token_id):
                    found[record.key] = record

        for key, record in self._cache.items():
            if key.touches(token_id):
                found[key] = record

        for key, record in found.items():
            self._cache.setdefault(key, record)
        return sorted(found.values(), key=lambda r: r.created_at)

    def evict(self, token_id: str) -> int:
        """Drop cached overrides touching a token; storage is left alone."""
        keys = [key for key in self._cache if key.touches(token_id)]
        for key in keys:
            del self._cache[key]
        return len(keys)

    def records(self) -> list[OverrideRecord]:
        """All cached overrides."""
        return list(self._cache.values())

    async def clear_scene(self) -> int:
        """Remove every override in the scene."""
        removed = 0
        for target_id in await self.storage.token_ids():
            flags = await self.storage.get_flags(target_id)
            for key in list(flags):
                if key.startswith(FLAG_PREFIX):
                    await self.storage.unset_flag(target_id, key)
                    removed += 1
        self._cache.clear()
        log.info("overrides_cleared", count=removed)
        return removed

    # =========================================================================
    # Per-action helpers
    # =========================================================================

    async def set_pair_overrides(
        self,
        observer_id: str,
        changes: Iterable[PairChange],
        source: OverrideSource = OverrideSource.MANUAL,
    ) -> list[PairKey]:
        """
        Apply an action's outcome for one observer.

        Stealth is one-way (observer -> target). Every other source is
        symmetric and pins both directions with the same state.
        """
        written = []
        for change in changes:
            provenance = change.provenance(source)
            if await self.set(observer_id, change.target_id, change.state, provenance):
                written.append(PairKey(observer_id, change.target_id))
            if source.is_one_way:
                continue
            if await self.set(change.target_id, observer_id, change.state, provenance):
                written.append(PairKey(change.target_id, observer_id))
        return written

    async def apply_for_seek(self, seeker_id: str, changes: Iterable[PairChange]):
        return await self.set_pair_overrides(seeker_id, changes, OverrideSource.SEEK)

    async def apply_for_point_out(self, ally_id: str, target_id: str):
        """A pointed-out target is at least hidden to the ally."""
        change = PairChange(target_id=target_id, state=VisibilityState.HIDDEN)
        return await self.set_pair_overrides(ally_id, [change], OverrideSource.POINT_OUT)

    async def apply_for_hide(self, observer_id: str, changes: Iterable[PairChange]):
        return await self.set_pair_overrides(observer_id, changes, OverrideSource.HIDE)

    async def apply_for_stealth(self, observer_id: str, changes: Iterable[PairChange]):
        return await self.set_pair_overrides(observer_id, changes, OverrideSource.STEALTH)

    async def apply_for_diversion(self, observer_id: str, changes: Iterable[PairChange]):
        return await self.set_pair_overrides(observer_id, changes, OverrideSource.DIVERSION)

    async def apply_for_take_cover(self, observer_id: str, changes: Iterable[PairChange]):
        return await self.set_pair_overrides(observer_id, changes, OverrideSource.TAKE_COVER)

    async def clear_for_consequences(self, actor_id: str, target_ids: Iterable[str]) -> int:
        """After an attack from concealment, drop overrides in both directions."""
        removed = 0
        for target_id in target_ids:
            if await self.remove(target_id, actor_id):
                removed += 1
            if await self.remove(actor_id, target_id):
                removed += 1
        return removed

    # =========================================================================
    # Parsing
    # =========================================================================

    def _parse_flags(self, target_id: str, flags: dict[str, Any]) -> list[OverrideRecord]:
        records = []
        for key, data in flags.items():
            if not key.startswith(FLAG_PREFIX) or not data:
                continue
            observer_id = key[len(FLAG_PREFIX):]
            record = self._parse_one(observer_id, target_id, data)
            if record is not None:
                records.append(record)
        return records

    def _parse_one(self, observer_id: str, target_id: str, data: Any) -> OverrideRecord | None:
        try:
            return OverrideRecord.from_flag(observer_id, target_id, data)
        except (KeyError, ValueError, TypeError) as e:
            log.warning(
                "override_flag_malformed",
                pair=str(PairKey(observer_id, target_id)),
                error=str(e),
            )
            return None
