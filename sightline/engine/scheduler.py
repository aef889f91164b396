"""
Batch Scheduler - Coalesces dirty tokens into single recomputation passes.

The pass:
1. Snapshot the dirty set
2. If a stealth-flagged token is dirty, wait a short settle delay so
   externally set overrides land first
3. Dirty tokens that are now excluded lose their automatic entries
4. For each dirty token x every other live token, both directions:
   override present -> skip, else run the calculator
5. Collect only pairs whose value differs from the map
6. Apply all writes in one step (automatic provenance)
7. Emit visibility_changed per pair, then refresh_perception once
8. Marks made while the pass ran form the next dirty set

Scheduling is cooperative on the running asyncio loop: marking a token
schedules one pass on the next tick. At most one pass is in flight. Marks
made during a pass, or while overrides are being validated, wait for the
next pass.
"""

from __future__ import annotations
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
import asyncio
import time

import structlog

from ..core.calculator import OverrideLookup, VisibilityCalculator
from ..core.state import PairKey, VisibilityState, is_excluded
from ..core.visibility_map import MapUpdate, VisibilityMapStore
from ..core.world import WorldState
from .notifier import RefreshNotifier


log = structlog.get_logger(__name__)


class SchedulerState(Enum):
    """What the engine is doing right now."""
    IDLE = "idle"
    BATCHING = "batching"
    VALIDATING = "validating"


@dataclass
class BatchResult:
    """
    Result of one batch pass.
    """
    success: bool
    state: SchedulerState

    processed_tokens: list[str] = field(default_factory=list)
    pairs_checked: int = 0
    updates: list[MapUpdate] = field(default_factory=list)

    # Entries dropped because a token became excluded
    cleared: list[PairKey] = field(default_factory=list)

    # Re-entrant call that did nothing
    skipped: bool = False

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    duration: float = 0.0


class BatchScheduler:
    """
    Usage:
        scheduler = BatchScheduler(world, calculator, visibility_map, notifier)
        scheduler.mark_dirty("token-1")   # pass runs on the next loop tick
        result = await scheduler.run_now()
    """

    def __init__(
        self,
        world: WorldState,
        calculator: VisibilityCalculator,
        visibility_map: VisibilityMapStore,
        notifier: RefreshNotifier,
        overrides: OverrideLookup | None = None,
        settle_delay: float = 0.025,
    ):
        self.world = world
        self.calculator = calculator
        self.visibility_map = visibility_map
        self.notifier = notifier
        self.overrides = overrides
        self.settle_delay = settle_delay

        self.enabled = True
        self.state = SchedulerState.IDLE
        self.total_updates = 0
        self.passes = 0

        self._dirty: set[str] = set()
        self._scheduled: asyncio.Handle | None = None
        self._task: asyncio.Task | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    # =========================================================================
    # Marking
    # =========================================================================

    @property
    def dirty(self) -> set[str]:
        return set(self._dirty)

    def mark_dirty(self, token_id: str) -> None:
        if not self.enabled:
            return
        self._dirty.add(token_id)
        self._schedule()

    def mark_many(self, token_ids, force: bool = False) -> None:
        if not self.enabled and not force:
            return
        self._dirty.update(token_ids)
        self._schedule()

    def mark_all_dirty(self, force: bool = False) -> None:
        if not self.enabled and not force:
            return
        self._dirty.update(t.id for t in self.world.tokens())
        self._schedule()

    def discard(self, token_id: str) -> None:
        """Forget a token (deleted before its pass ran)."""
        self._dirty.discard(token_id)

    def _schedule(self):
        if self._scheduled is not None or self.state != SchedulerState.IDLE:
            return
        if not self._dirty:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: an explicit process_batch() call picks the marks up
            return
        self._scheduled = loop.call_soon(self._run)

    def _run(self):
        self._scheduled = None
        self._task = asyncio.get_running_loop().create_task(self.process_batch())

    def cancel_scheduled(self) -> None:
        """Cancel a scheduled pass that has not started yet."""
        if self._scheduled is not None:
            self._scheduled.cancel()
            self._scheduled = None

    def _set_state(self, state: SchedulerState):
        self.state = state
        if state == SchedulerState.IDLE:
            self._idle.set()
        else:
            self._idle.clear()

    async def wait_idle(self) -> None:
        while self.state != SchedulerState.IDLE:
            await self._idle.wait()

    async def run_now(self) -> BatchResult:
        """Run a pass immediately, after any pass or validation in flight."""
        self.cancel_scheduled()
        await self.wait_idle()
        return await self.process_batch()

    @asynccontextmanager
    async def validating(self):
        """Hold off batch passes while overrides are being validated."""
        await self.wait_idle()
        self._set_state(SchedulerState.VALIDATING)
        try:
            yield
        finally:
            self._set_state(SchedulerState.IDLE)
            self._schedule()

    # =========================================================================
    # Pass
    # =========================================================================

    async def process_batch(self) -> BatchResult:
        if self.state != SchedulerState.IDLE:
            log.debug("batch_skipped", state=self.state.value, dirty=len(self._dirty))
            return BatchResult(success=False, state=self.state, skipped=True)

        if not self._dirty:
            return BatchResult(success=True, state=self.state)

        self._set_state(SchedulerState.BATCHING)
        started = time.time()
        dirty = set(self._dirty)
        self._dirty.clear()
        result = BatchResult(success=True, state=self.state, processed_tokens=sorted(dirty))

        try:
            if self.settle_delay > 0 and self._any_stealth_active(dirty):
                await asyncio.sleep(self.settle_delay)

            cleared = self._clear_excluded(dirty)
            updates = self._compute_updates(dirty, result)
            if updates:
                self.visibility_map.apply(updates, is_automatic=True)
                for update in updates:
                    self.notifier.visibility_changed(
                        update.observer_id, update.target_id, update.state
                    )
            # Dropped entries read as the default again
            for key in cleared:
                self.notifier.visibility_changed(
                    key.observer_id, key.target_id, VisibilityState.OBSERVED
                )
            if updates or cleared:
                self.notifier.refresh_perception()

            result.updates = updates
            result.cleared = cleared
            self.total_updates += len(updates)
            self.passes += 1
        except Exception as e:
            result.success = False
            result.errors.append(str(e))
            log.error("batch_failed", error=str(e), exc_info=True)
        finally:
            self._set_state(SchedulerState.IDLE)
            result.state = self.state
            result.duration = time.time() - started
            self._schedule()

        log.info(
            "batch_processed",
            tokens=len(dirty),
            pairs=result.pairs_checked,
            updates=len(result.updates),
            duration_ms=round(result.duration * 1000, 2),
        )
        return result

    def _any_stealth_active(self, token_ids: set[str]) -> bool:
        for token_id in token_ids:
            token = self.world.get_token(token_id)
            if token is not None and token.stealth_active:
                return True
        return False

    def _clear_excluded(self, dirty: set[str]) -> list[PairKey]:
        cleared = []
        for token_id in sorted(dirty):
            token = self.world.get_token(token_id)
            if token is None or not is_excluded(token):
                continue
            removed = self.visibility_map.delete_automatic_for(token_id)
            if removed:
                log.info("excluded_token_cleared", token_id=token_id, entries=len(removed))
            cleared.extend(removed)
        return cleared

    def _compute_updates(self, dirty: set[str], result: BatchResult) -> list[MapUpdate]:
        live = [t for t in self.world.tokens() if not is_excluded(t)]
        seen: set[PairKey] = set()
        updates = []

        for token_id in sorted(dirty):
            token = self.world.get_token(token_id)
            if token is None or is_excluded(token):
                continue
            for other in live:
                if other.id == token.id:
                    continue
                for observer, target in ((token, other), (other, token)):
                    key = PairKey(observer.id, target.id)
                    if key in seen:
                        continue
                    seen.add(key)

                    if self.overrides is not None and self.overrides.peek(observer.id, target.id):
                        continue

                    result.pairs_checked += 1
                    try:
                        state = self.calculator.calculate_raw(observer, target)
                    except Exception as e:
                        result.warnings.append(f"{key}: {e}")
                        log.warning("pair_failed", pair=str(key), error=str(e))
                        state = VisibilityState.OBSERVED

                    current = self.visibility_map.get(observer.id, target.id)
                    if state != current:
                        updates.append(MapUpdate(
                            observer_id=observer.id,
                            target_id=target.id,
                            state=state,
                            previous=current,
                        ))
        return updates
