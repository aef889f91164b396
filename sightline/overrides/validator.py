"""
Override Validator - Detects pinned values whose justification no longer holds.

After a token finishes moving (debounced, newer moves cancel the pending
timer), every override touching the token is re-checked against freshly
computed cover and visibility, ignoring the override itself:

1. Expected cover, target has no standard/greater cover   -> removable
2. Expected no cover, target gained standard/greater cover -> informational
3. Expected concealment, target is not concealed           -> removable
4. Expected no concealment, target is now concealed        -> informational
5. Expected concealment, target clearly observed, no cover -> removable
6. `undetected` from a manual or stealth source, target observed with no
   cover and no concealment, observer without darkvision (or bright light)
   -> removable, whatever the original expectation

Conflicts are never resolved automatically. They are handed to an external
resolution surface, which answers with accept (keep the override, drop the
flag), reject (remove the override) or modify (pin an explicit new state).

A failure while re-checking means the override cannot be confirmed stale,
so it is trusted and the error is logged.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Protocol
import asyncio
import uuid

import structlog

from ..core.calculator import VisibilityCalculator
from ..core.state import (
    CoverState,
    LightLevel,
    OverrideRecord,
    OverrideSource,
    PairKey,
    VisibilityState,
)
from ..core.world import LightingQuery, VisionQuery, WorldState
from .conflicts import ConflictSeverity, assess_severity
from .store import OverrideStore, Provenance


log = structlog.get_logger(__name__)


class ResolutionAction(Enum):
    ACCEPT = "accept"  # Keep override, clear the flag
    REJECT = "reject"  # Remove override, normal computation resumes
    MODIFY = "modify"  # Replace with an explicit new state


class OverrideWriter(Protocol):
    """The service-level writer that keeps the map in step with overrides."""

    async def set_override(
        self,
        observer_id: str,
        target_id: str,
        state: VisibilityState | str,
        provenance: Provenance | None = None,
    ) -> bool: ...

    async def remove_override(self, observer_id: str, target_id: str) -> bool: ...


@dataclass
class OverrideConflict:
    """
    An override that may no longer match the world.
    """
    conflict_id: str
    observer_id: str
    target_id: str
    override: OverrideRecord
    reasons: list[str] = field(default_factory=list)

    severity: ConflictSeverity = ConflictSeverity.NONE
    removable: bool = False

    # What the world shows now
    current_visibility: VisibilityState | None = None
    current_cover: CoverState | None = None

    # For user resolution
    question: str | None = None
    options: list[str] = field(
        default_factory=lambda: [a.value for a in ResolutionAction]
    )

    # Filled after resolution
    resolved: bool = False
    resolution: ResolutionAction | None = None

    @property
    def reason(self) -> str:
        return " and ".join(self.reasons)

    @property
    def key(self) -> PairKey:
        return PairKey(self.observer_id, self.target_id)


@dataclass
class AwarenessNotice:
    """Overrides exist for a moved token but none look stale."""
    token_id: str
    overrides: list[OverrideRecord] = field(default_factory=list)
    message: str = ""


@dataclass
class ValidationResult:
    """
    Result of validating the overrides of one moved token.
    """
    token_id: str
    checked: int = 0
    conflicts: list[OverrideConflict] = field(default_factory=list)
    notices: list[AwarenessNotice] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def needs_user_input(self) -> bool:
        return any(c.removable and not c.resolved for c in self.conflicts)

    def get_questions(self) -> list[dict[str, Any]]:
        """Questions for the resolution surface."""
        return [
            {
                "id": conflict.conflict_id,
                "type": "override_conflict",
                "question": conflict.question or conflict.reason,
                "options": conflict.options,
                "observer_id": conflict.observer_id,
                "target_id": conflict.target_id,
                "expected": conflict.override.state.value,
                "detected": (
                    conflict.current_visibility.value
                    if conflict.current_visibility else None
                ),
            }
            for conflict in self.conflicts
            if not conflict.resolved
        ]


ResultSink = Callable[[ValidationResult], Any]


class OverrideValidator:
    """
    Debounced staleness check for overrides touching moved tokens.

    Usage:
        validator = OverrideValidator(store, calculator, world, world, world)
        validator.queue("token-1")          # from a move handler
        ...
        results = await validator.flush()   # or wait for the debounce timer
    """

    def __init__(
        self,
        store: OverrideStore,
        calculator: VisibilityCalculator,
        world: WorldState,
        lighting: LightingQuery,
        vision: VisionQuery,
        debounce: float = 0.5,
        writer: OverrideWriter | None = None,
    ):
        self.store = store
        self.calculator = calculator
        self.world = world
        self.lighting = lighting
        self.vision = vision
        self.debounce = debounce
        self.writer = writer

        self.enabled = True
        self._queued: set[str] = set()
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self._sinks: list[ResultSink] = []
        self._runner: Callable[[list[str]], Awaitable[list[ValidationResult]]] | None = None

        # Unresolved conflicts by id
        self.pending: dict[str, OverrideConflict] = {}

    def on_result(self, sink: ResultSink) -> None:
        """Register a resolution surface. Sinks may be sync or async."""
        self._sinks.append(sink)

    def set_runner(self, runner: Callable[[list[str]], Awaitable[list[ValidationResult]]]):
        """Wrap processing (the service uses this to enter its validating state)."""
        self._runner = runner

    # =========================================================================
    # Scheduling
    # =========================================================================

    def queue(self, token_id: str) -> None:
        """Queue a moved token; restarts the debounce window."""
        if not self.enabled:
            return
        self._queued.add(token_id)

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("validation_deferred", token_id=token_id, reason="no_running_loop")
            return
        self._timer = loop.call_later(self.debounce, self._fire)

    def cancel(self) -> None:
        """Drop the scheduled (not yet running) validation."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._queued.clear()

    @property
    def is_scheduled(self) -> bool:
        return self._timer is not None

    @property
    def queued(self) -> set[str]:
        return set(self._queued)

    def _fire(self):
        self._timer = None
        self._task = asyncio.get_running_loop().create_task(self.flush())

    async def flush(self) -> list[ValidationResult]:
        """Run validation now for everything queued."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        token_ids = sorted(self._queued)
        self._queued.clear()
        if not token_ids:
            return []
        if self._runner is not None:
            return await self._runner(token_ids)
        return await self.process(token_ids)

    async def process(self, token_ids: Iterable[str]) -> list[ValidationResult]:
        results = []
        for token_id in token_ids:
            result = await self.validate_token(token_id)
            results.append(result)
            await self._emit(result)
        return results

    async def _emit(self, result: ValidationResult):
        if not result.conflicts and not result.notices:
            return
        for sink in list(self._sinks):
            try:
                outcome = sink(result)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as e:
                log.warning("validation_sink_failed", token_id=result.token_id, error=str(e))

    # =========================================================================
    # Checking
    # =========================================================================

    async def validate_token(self, token_id: str) -> ValidationResult:
        """Re-check every override where the token is observer or target."""
        result = ValidationResult(token_id=token_id)
        if self.world.get_token(token_id) is None:
            result.errors.append(f"Token {token_id} not found")
            return result

        records = await self.store.list_all(token_id)
        result.checked = len(records)

        for record in records:
            conflict = self.check_override(record)
            if conflict is None:
                continue
            result.conflicts.append(conflict)
            self.pending[conflict.conflict_id] = conflict

        if records and not result.conflicts:
            result.notices.append(AwarenessNotice(
                token_id=token_id,
                overrides=records,
                message=f"{len(records)} override(s) involve this token; all still consistent",
            ))

        log.info(
            "overrides_validated",
            token_id=token_id,
            checked=result.checked,
            conflicts=len(result.conflicts),
        )
        return result

    def check_override(self, record: OverrideRecord) -> OverrideConflict | None:
        """Conflict for one override, or None if it still holds."""
        pair_log = log.bind(pair=str(record.key), step="validate")
        try:
            observer = self.world.get_token(record.observer_id)
            target = self.world.get_token(record.target_id)
            if observer is None or target is None:
                return None

            visibility = self.calculator.decide(observer, target, pair_log)
            cover = self.world.detect_cover(observer, target)
            light = self.lighting.get_light_level_at(self.world.get_position(target))
            caps = self.vision.get_vision_capabilities(observer)
        except Exception as e:
            pair_log.warning("override_validation_failed", error=str(e), exc_info=True)
            return None

        has_cover = cover.can_hide
        concealed = visibility.is_concealing
        visible = visibility in (VisibilityState.OBSERVED, VisibilityState.CONCEALED)

        removable = []
        informational = []

        if record.expects_cover and not has_cover:
            removable.append("has no cover (override expected cover)")
        if not record.expects_cover and has_cover:
            informational.append("now has cover (override expected no cover)")

        if record.expects_concealment and visible and not concealed:
            removable.append("has no concealment (override expected concealment)")
        if not record.expects_concealment and concealed:
            informational.append("now has concealment (override expected no concealment)")

        if (
            record.expects_concealment
            and visibility == VisibilityState.OBSERVED
            and not has_cover
        ):
            removable.append("is now clearly visible (override expected concealment)")

        if record.state == VisibilityState.UNDETECTED and (
            record.source == OverrideSource.MANUAL or record.source.is_stealth
        ):
            exposed = visibility == VisibilityState.OBSERVED and not has_cover and not concealed
            if exposed and (not caps.has_darkvision or light == LightLevel.BRIGHT):
                if record.source == OverrideSource.STEALTH:
                    removable.append("stealth failed: now clearly visible in bright light")
                else:
                    removable.append("is now clearly visible with no concealment or cover")
            if (
                record.source == OverrideSource.STEALTH
                and light == LightLevel.BRIGHT
                and not has_cover
            ):
                removable.append("stealth broken: moved to bright open area")

        reasons = removable + informational
        if not reasons:
            return None

        conflict = OverrideConflict(
            conflict_id=str(uuid.uuid4()),
            observer_id=record.observer_id,
            target_id=record.target_id,
            override=record,
            reasons=reasons,
            severity=assess_severity(visibility, record.state),
            removable=bool(removable),
            current_visibility=visibility,
            current_cover=cover,
        )
        observer_name = record.observer_name or record.observer_id
        target_name = record.target_name or record.target_id
        conflict.question = (
            f"The override {observer_name} -> {target_name} may no longer be valid: "
            f"{target_name} {conflict.reason}."
        )
        pair_log.info(
            "override_conflict",
            reasons=reasons,
            severity=conflict.severity.value,
            removable=conflict.removable,
        )
        return conflict

    # =========================================================================
    # Resolution
    # =========================================================================

    async def resolve(
        self,
        conflict_id: str,
        action: ResolutionAction | str,
        new_state: VisibilityState | str | None = None,
    ) -> bool:
        """Apply a resolution requested by the external surface."""
        conflict = self.pending.get(conflict_id)
        if conflict is None:
            return False
        action = ResolutionAction(action)
        pair = conflict.key

        if action == ResolutionAction.REJECT:
            if self.writer is not None:
                await self.writer.remove_override(pair.observer_id, pair.target_id)
            else:
                await self.store.remove(pair.observer_id, pair.target_id)

        elif action == ResolutionAction.MODIFY:
            if new_state is None:
                return False
            provenance = Provenance(
                source=conflict.override.source,
                expected_cover=conflict.current_cover,
                expected_concealment=None,
            )
            if self.writer is not None:
                ok = await self.writer.set_override(
                    pair.observer_id, pair.target_id, new_state, provenance
                )
            else:
                ok = await self.store.set(pair.observer_id, pair.target_id, new_state, provenance)
            if not ok:
                return False

        conflict.resolved = True
        conflict.resolution = action
        del self.pending[conflict_id]
        log.info("override_conflict_resolved", pair=str(pair), action=action.value)
        return True
