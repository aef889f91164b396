"""
Visibility Service - One explicitly constructed engine instance per scene.

The service owns every store and wires the components together:

    EventBus -> ChangeDetector -> BatchScheduler -> VisibilityMapStore
                                       |                  |
                              VisibilityCalculator   RefreshNotifier
                                       |
                                 OverrideStore <- OverrideValidator

Produced interface:
    calculate_visibility, get_visibility_map,
    set_override, get_override, remove_override, clear_all_overrides,
    recalculate_all, recalculate_for_tokens,
    notifier.on_visibility_changed, notifier.on_refresh

Writers: the scheduler (automatic) and override application (manual)
write the map; the override store is the only writer of overrides.
"""

from __future__ import annotations
from typing import Any
import asyncio

import structlog

from ..config import EngineConfig
from ..core.calculator import VisibilityCalculator
from ..core.events import EventBus
from ..core.state import PairKey, VisibilityState
from ..core.visibility_map import VisibilityMapStore
from ..core.world import ConditionQuery, LightingQuery, VisionQuery, WorldState
from ..overrides.conflicts import (
    AllowAllPolicy,
    ConflictSeverity,
    ConsistencyReport,
    TransitionPolicy,
    validate_override_consistency,
)
from ..overrides.position import PositionSnapshot, PositionTransition, capture_snapshot
from ..overrides.store import OverrideStore, Provenance
from ..overrides.validator import (
    OverrideConflict,
    OverrideValidator,
    ResolutionAction,
    ValidationResult,
)
from ..storage.flags import FlagStorage, InMemoryFlagStorage, JsonFileFlagStorage
from .detector import ChangeDetector
from .notifier import RefreshNotifier
from .scheduler import BatchResult, BatchScheduler, SchedulerState


log = structlog.get_logger(__name__)


class VisibilityService:
    """
    Usage:
        world = InMemoryWorld(bus=bus)
        service = VisibilityService(world, bus=bus)
        await service.start()

        await service.set_override("a", "b", "hidden")
        state = await service.calculate_visibility("a", "b")
    """

    def __init__(
        self,
        world: WorldState,
        bus: EventBus | None = None,
        storage: FlagStorage | None = None,
        config: EngineConfig | None = None,
        lighting: LightingQuery | None = None,
        vision: VisionQuery | None = None,
        conditions: ConditionQuery | None = None,
        policy: TransitionPolicy | None = None,
    ):
        self.config = config or EngineConfig()
        self.world = world
        self.bus = bus or EventBus()
        self.policy = policy or AllowAllPolicy()

        if storage is None:
            if self.config.storage_dir:
                storage = JsonFileFlagStorage(self.config.storage_dir)
            else:
                storage = InMemoryFlagStorage()
        self.storage = storage

        self.lighting = lighting or world
        self.vision = vision or world
        self.conditions = conditions or world

        self.overrides = OverrideStore(world, storage)
        override_lookup = self.overrides if self.config.respect_overrides else None

        self.calculator = VisibilityCalculator(
            world=world,
            lighting=self.lighting,
            vision=self.vision,
            conditions=self.conditions,
            overrides=override_lookup,
        )
        self.visibility_map = VisibilityMapStore()
        self.notifier = RefreshNotifier()

        self.scheduler = BatchScheduler(
            world=world,
            calculator=self.calculator,
            visibility_map=self.visibility_map,
            notifier=self.notifier,
            overrides=override_lookup,
            settle_delay=self.config.settle_delay,
        )

        self.validator = OverrideValidator(
            store=self.overrides,
            calculator=self.calculator,
            world=world,
            lighting=self.lighting,
            vision=self.vision,
            debounce=self.config.validation_debounce,
            writer=self,
        )
        self.validator.set_runner(self._run_validation)

        self.detector = ChangeDetector(
            bus=self.bus,
            world=world,
            scheduler=self.scheduler,
            config=self.config,
            on_moved=self.validator.queue,
            on_deleted=self._on_token_deleted,
        )

        self.enabled = self.config.enabled
        self.last_report: ConsistencyReport | None = None
        self._tasks: set[asyncio.Task] = set()
        self._apply_enabled()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> BatchResult:
        """Load persisted overrides, subscribe to events, compute everything."""
        await self.overrides.load()
        for record in self.overrides.records():
            self.visibility_map.set(
                record.observer_id, record.target_id, record.state, is_automatic=False
            )
        self.detector.attach()
        log.info("visibility_service_started", tokens=len(self.world.tokens()))
        return await self.recalculate_all(force=True)

    def stop(self) -> None:
        self.detector.detach()
        self.validator.cancel()
        self.scheduler.cancel_scheduled()
        log.info("visibility_service_stopped")

    def enable(self) -> None:
        self.enabled = True
        self._apply_enabled()

    def disable(self) -> None:
        self.enabled = False
        self._apply_enabled()

    def _apply_enabled(self):
        self.scheduler.enabled = self.enabled
        self.detector.enabled = self.enabled
        self.validator.enabled = self.enabled

    async def flush(self) -> BatchResult:
        """Run pending validation and any dirty pass now."""
        await self.validator.flush()
        return await self.scheduler.run_now()

    # =========================================================================
    # Visibility
    # =========================================================================

    async def calculate_visibility(self, observer_id: str, target_id: str) -> VisibilityState:
        return self.calculator.calculate_by_id(observer_id, target_id)

    def get_visibility_map(self, token_id: str) -> dict[str, VisibilityState]:
        return self.visibility_map.get_map(token_id)

    async def recalculate_all(self, force: bool = False) -> BatchResult:
        if not self.enabled and not force:
            return BatchResult(success=False, state=self.scheduler.state, skipped=True)
        self.scheduler.mark_all_dirty(force=force)
        return await self._run_pass()

    async def recalculate_for_tokens(self, token_ids) -> BatchResult:
        self.scheduler.mark_many(list(token_ids), force=True)
        return await self._run_pass()

    async def _run_pass(self) -> BatchResult:
        # Inside validation the marks wait for the pass that follows it
        if self.scheduler.state == SchedulerState.VALIDATING:
            return BatchResult(success=True, state=self.scheduler.state, skipped=True)
        return await self.scheduler.run_now()

    # =========================================================================
    # Overrides
    # =========================================================================

    async def set_override(
        self,
        observer_id: str,
        target_id: str,
        state: VisibilityState | str,
        provenance: Provenance | None = None,
        transition: PositionTransition | None = None,
        context: dict[str, Any] | None = None,
    ) -> bool:
        """
        Pin a value for the pair and write it to the map (manual provenance).

        With a position transition the override is checked for conflicts
        first; critical conflicts block it unless blocking is disabled.
        Without one, only the transition policy is consulted.
        """
        pair = str(PairKey(observer_id, target_id))
        try:
            state = VisibilityState.coerce(state)
        except ValueError:
            log.warning("override_rejected", pair=pair, reason="invalid_state", state=state)
            return False

        current = self.visibility_map.get(observer_id, target_id)
        if transition is None:
            if not self.policy.is_transition_allowed(current, state, context or {}):
                log.warning("override_rejected", pair=pair, reason="policy", current=current.value)
                return False
        else:
            report = validate_override_consistency(state, transition, self.policy, context)
            self.last_report = report
            for warning in report.warnings:
                log.warning("override_conflict_warning", pair=pair, warning=warning)
            blocking = [
                e for e in report.errors
                if self.config.block_critical_conflicts
                or report.severity != ConflictSeverity.CRITICAL
            ]
            if blocking:
                log.warning(
                    "override_blocked",
                    pair=pair,
                    severity=report.severity.value,
                    errors=report.errors,
                )
                return False

        if not await self.overrides.set(observer_id, target_id, state, provenance):
            return False

        if self.visibility_map.set(observer_id, target_id, state, is_automatic=False):
            self.notifier.visibility_changed(observer_id, target_id, state)
            self.notifier.refresh_perception()
        return True

    async def get_override(self, observer_id: str, target_id: str):
        return await self.overrides.get(observer_id, target_id)

    async def list_overrides(self, token_id: str):
        return await self.overrides.list_all(token_id)

    async def remove_override(self, observer_id: str, target_id: str) -> bool:
        """Remove the override and recompute both tokens."""
        removed = await self.overrides.remove(observer_id, target_id)
        if removed:
            await self.recalculate_for_tokens([observer_id, target_id])
        return removed

    async def clear_all_overrides(self, token_id: str | None = None) -> int:
        """
        Clear overrides touching one token, or the whole scene when no
        token is given (followed by a full recalculation).
        """
        if token_id is None:
            removed = await self.overrides.clear_scene()
            await self.recalculate_all(force=True)
            return removed

        records = await self.overrides.list_all(token_id)
        removed = await self.overrides.clear_all(token_id)
        touched = {token_id}
        for record in records:
            touched.update((record.observer_id, record.target_id))
        live = [t for t in touched if self.world.get_token(t) is not None]
        if removed and live:
            await self.recalculate_for_tokens(live)
        return removed

    # =========================================================================
    # Position and validation
    # =========================================================================

    def capture_snapshot(self, observer_id: str, target_id: str) -> PositionSnapshot | None:
        observer = self.world.get_token(observer_id)
        target = self.world.get_token(target_id)
        if observer is None or target is None:
            return None
        return capture_snapshot(self.calculator, self.world, self.lighting, observer, target)

    async def validate_overrides(self, token_id: str) -> ValidationResult:
        """Validate one token now, bypassing the debounce window."""
        results = await self._run_validation([token_id])
        return results[0]

    async def _run_validation(self, token_ids: list[str]) -> list[ValidationResult]:
        async with self.scheduler.validating():
            return await self.validator.process(token_ids)

    def pending_conflicts(self) -> list[OverrideConflict]:
        return list(self.validator.pending.values())

    async def resolve_conflict(
        self,
        conflict_id: str,
        action: ResolutionAction | str,
        new_state: VisibilityState | str | None = None,
    ) -> bool:
        return await self.validator.resolve(conflict_id, action, new_state)

    # =========================================================================
    # Deletion
    # =========================================================================

    def _purge(self, token_id: str):
        self.visibility_map.delete_all_for(token_id)
        self.overrides.evict(token_id)
        for conflict_id, conflict in list(self.validator.pending.items()):
            if conflict.key.touches(token_id):
                del self.validator.pending[conflict_id]

    def _on_token_deleted(self, token_id: str):
        self._purge(token_id)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("override_cleanup_deferred", token_id=token_id)
            return
        task = loop.create_task(self.overrides.clear_all(token_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle_token_deleted(self, token_id: str) -> int:
        """Purge map entries and persisted overrides for a deleted token."""
        self._purge(token_id)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        return await self.overrides.clear_all(token_id)

    # =========================================================================
    # Status
    # =========================================================================

    def get_status(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "state": self.scheduler.state.value,
            "changed_tokens": len(self.scheduler.dirty),
            "processing_batch": self.scheduler.state == SchedulerState.BATCHING,
            "total_updates": self.scheduler.total_updates,
            "passes": self.scheduler.passes,
            "overrides": len(self.overrides.records()),
            "pending_conflicts": len(self.validator.pending),
            "validation_scheduled": self.validator.is_scheduled,
        }
