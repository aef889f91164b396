"""
Visibility Calculator - Decides what an observer can detect about a target.

Decision order (first matching rule wins):
1. Override for the pair
2. Observer has automation disabled       -> observed
3. Observer blinded / without sight       -> hidden
4. Target invisible, no counter-sense      -> undetected
5. Observer dazzled                        -> concealed
6. No line of sight                        -> hidden
7. Lighting at the target vs. the observer's senses

The calculator is total: any failure while deciding degrades to `observed`
and is logged. It never mutates anything and never schedules work.
"""

from __future__ import annotations
from typing import Protocol

import structlog

from .state import (
    LightLevel,
    OverrideRecord,
    PairKey,
    Token,
    VisibilityState,
)
from .world import ConditionQuery, LightingQuery, VisionQuery, WorldState


log = structlog.get_logger(__name__)


class OverrideLookup(Protocol):
    """Synchronous read of a pinned value (served from the override cache)."""

    def peek(self, observer_id: str, target_id: str) -> OverrideRecord | None: ...


class VisibilityCalculator:
    """
    Pure visibility decision function over injected world queries.

    Usage:
        calculator = VisibilityCalculator(
            world=world,
            lighting=world,
            vision=world,
            conditions=world,
            overrides=override_store,
        )
        state = calculator.calculate(observer, target)
    """

    def __init__(
        self,
        world: WorldState,
        lighting: LightingQuery,
        vision: VisionQuery,
        conditions: ConditionQuery,
        overrides: OverrideLookup | None = None,
    ):
        self.world = world
        self.lighting = lighting
        self.vision = vision
        self.conditions = conditions
        self.overrides = overrides

    def calculate(self, observer: Token, target: Token) -> VisibilityState:
        """Visibility of target from observer, overrides first."""
        pair_log = log.bind(pair=str(PairKey(observer.id, target.id)))
        try:
            if self.overrides is not None:
                record = self.overrides.peek(observer.id, target.id)
                if record is not None:
                    pair_log.debug(
                        "visibility_decided",
                        step="override",
                        result=record.state.value,
                        source=record.source.value,
                    )
                    return record.state
            return self.decide(observer, target, pair_log)
        except Exception as e:
            pair_log.warning("visibility_calculation_failed", error=str(e), exc_info=True)
            return VisibilityState.OBSERVED

    def calculate_raw(self, observer: Token, target: Token) -> VisibilityState:
        """Visibility from world state alone, ignoring any override."""
        pair_log = log.bind(pair=str(PairKey(observer.id, target.id)), raw=True)
        try:
            return self.decide(observer, target, pair_log)
        except Exception as e:
            pair_log.warning("visibility_calculation_failed", error=str(e), exc_info=True)
            return VisibilityState.OBSERVED

    def calculate_by_id(
        self,
        observer_id: str,
        target_id: str,
        raw: bool = False,
    ) -> VisibilityState:
        """Same as calculate, resolving ids first. Missing tokens are observed."""
        observer = self.world.get_token(observer_id)
        target = self.world.get_token(target_id)
        if observer is None or target is None:
            log.warning(
                "visibility_token_missing",
                pair=str(PairKey(observer_id, target_id)),
                observer_found=observer is not None,
                target_found=target is not None,
            )
            return VisibilityState.OBSERVED
        if raw:
            return self.calculate_raw(observer, target)
        return self.calculate(observer, target)

    # =========================================================================
    # Decision steps
    # =========================================================================

    def decide(self, observer: Token, target: Token, pair_log=None) -> VisibilityState:
        """
        Rules 2-7 without the safety net. May raise; calculate and
        calculate_raw are the total variants.
        """
        if pair_log is None:
            pair_log = log.bind(pair=str(PairKey(observer.id, target.id)))
        if observer.automation_disabled:
            return _decided(pair_log, "automation_disabled", VisibilityState.OBSERVED)

        caps = self.vision.get_vision_capabilities(observer)
        observer_conditions = self.conditions.get_conditions(observer)
        target_conditions = self.conditions.get_conditions(target)
        distance = self.world.distance(observer, target)

        blinded = caps.is_blinded or not caps.has_vision or "blinded" in observer_conditions
        if blinded:
            return _decided(pair_log, "blinded", VisibilityState.HIDDEN)

        if "invisible" in target_conditions and not caps.see_invisibility:
            # Imprecise senses still locate an invisible target
            if caps.nonvisual_reaches(distance):
                return _decided(
                    pair_log, "invisible_sensed", VisibilityState.HIDDEN, distance=distance
                )
            return _decided(pair_log, "invisible", VisibilityState.UNDETECTED)

        if caps.is_dazzled or "dazzled" in observer_conditions:
            return _decided(pair_log, "dazzled", VisibilityState.CONCEALED)

        if not self.world.has_line_of_sight(observer, target):
            return _decided(
                pair_log,
                "no_line_of_sight",
                VisibilityState.HIDDEN,
                nonvisual=caps.nonvisual_reaches(distance),
            )

        light = self.lighting.get_light_level_at(self.world.get_position(target))
        return self._from_lighting(light, caps, distance, pair_log)

    def _from_lighting(self, light, caps, distance, pair_log) -> VisibilityState:
        inputs = {"light": light.value, "distance": round(distance, 2)}

        if light in (LightLevel.BRIGHT, LightLevel.UNKNOWN):
            return _decided(pair_log, "lighting", VisibilityState.OBSERVED, **inputs)

        if caps.darkvision_reaches(distance):
            return _decided(pair_log, "darkvision", VisibilityState.OBSERVED, **inputs)

        if light == LightLevel.DIM:
            if caps.low_light_reaches(distance) or caps.has_darkvision:
                return _decided(pair_log, "low_light", VisibilityState.OBSERVED, **inputs)
            return _decided(pair_log, "dim_light", VisibilityState.CONCEALED, **inputs)

        return _decided(pair_log, "darkness", VisibilityState.HIDDEN, **inputs)


def _decided(pair_log, step: str, state: VisibilityState, **inputs) -> VisibilityState:
    pair_log.debug("visibility_decided", step=step, result=state.value, **inputs)
    return state
