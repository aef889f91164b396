"""
Position Tracking - Snapshots of one pair's stealth position and their diff.

A snapshot is captured at the start and at the end of an action that cares
about stealth. Snapshots are never persisted; they only live long enough to
analyse the transition and to check a new override against it.

Snapshot capture queries each subsystem separately, so a failing subsystem
is recorded in `system_errors` and marked unavailable instead of failing
the whole capture.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
import time

import structlog

from ..core.calculator import VisibilityCalculator
from ..core.state import CoverState, LightLevel, PairKey, Token, VisibilityState
from ..core.world import LightingQuery, WorldState


log = structlog.get_logger(__name__)


class TransitionType(Enum):
    """Overall effect of a move on the target's stealth position."""
    IMPROVED = "improved"
    WORSENED = "worsened"
    MIXED = "mixed"
    UNCHANGED = "unchanged"


@dataclass
class PositionSnapshot:
    """
    One pair's position at a moment in time.

    `visibility` is the raw calculator output, ignoring overrides.
    """
    visibility: VisibilityState
    cover_state: CoverState = CoverState.NONE
    stealth_bonus: int = 0
    distance: float = 0.0
    has_line_of_sight: bool = True
    lighting: LightLevel = LightLevel.UNKNOWN
    system_errors: list[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    # Which subsystems answered
    visibility_available: bool = True
    cover_available: bool = True

    def to_dict(self) -> dict:
        return {
            "visibility": self.visibility.value,
            "cover_state": self.cover_state.value,
            "stealth_bonus": self.stealth_bonus,
            "distance": self.distance,
            "has_line_of_sight": self.has_line_of_sight,
            "lighting": self.lighting.value,
            "system_errors": list(self.system_errors),
            "timestamp": self.timestamp,
        }


@dataclass
class PositionTransition:
    """Diff between a start and an end snapshot."""
    start: PositionSnapshot
    end: PositionSnapshot
    visibility_changed: bool
    cover_changed: bool
    stealth_bonus_change: int
    transition_type: TransitionType

    @property
    def has_changed(self) -> bool:
        return self.visibility_changed or self.cover_changed

    def describe(self) -> list[str]:
        """Human readable lines for each changed aspect."""
        lines = []
        start, end = self.start, self.end
        if self.visibility_changed:
            verb = "improved" if end.visibility.is_worse_than(start.visibility) else "worsened"
            lines.append(
                f"Visibility {verb} from {start.visibility.value} to {end.visibility.value}"
            )
        if self.cover_changed:
            verb = "improved" if self.stealth_bonus_change > 0 else "worsened"
            if self.stealth_bonus_change == 0:
                verb = "changed"
            lines.append(
                f"Cover {verb} from {start.cover_state.value} to {end.cover_state.value} "
                f"({self.stealth_bonus_change:+d} stealth bonus)"
            )
        return lines


# =============================================================================
# Capture
# =============================================================================

def capture_snapshot(
    calculator: VisibilityCalculator,
    world: WorldState,
    lighting: LightingQuery,
    observer: Token,
    target: Token,
) -> PositionSnapshot:
    """Capture the target's position as seen by the observer."""
    pair_log = log.bind(pair=str(PairKey(observer.id, target.id)))
    errors = []

    visibility = VisibilityState.OBSERVED
    visibility_available = True
    try:
        visibility = calculator.decide(observer, target)
    except Exception as e:
        visibility_available = False
        errors.append(f"visibility: {e}")

    cover = CoverState.NONE
    cover_available = True
    try:
        cover = world.detect_cover(observer, target)
    except Exception as e:
        cover_available = False
        errors.append(f"cover: {e}")

    distance = 0.0
    try:
        distance = world.distance(observer, target)
    except Exception as e:
        errors.append(f"distance: {e}")

    line_of_sight = False
    try:
        line_of_sight = world.has_line_of_sight(observer, target)
    except Exception as e:
        errors.append(f"line_of_sight: {e}")

    light = LightLevel.UNKNOWN
    try:
        light = lighting.get_light_level_at(world.get_position(target))
    except Exception as e:
        errors.append(f"lighting: {e}")

    if errors:
        pair_log.warning("snapshot_degraded", errors=errors)

    return PositionSnapshot(
        visibility=visibility,
        cover_state=cover,
        stealth_bonus=cover.stealth_bonus,
        distance=distance,
        has_line_of_sight=line_of_sight,
        lighting=light,
        system_errors=errors,
        visibility_available=visibility_available,
        cover_available=cover_available,
    )


# =============================================================================
# Analysis
# =============================================================================

def analyze_transition(start: PositionSnapshot, end: PositionSnapshot) -> PositionTransition:
    """
    Classify a move for stealth purposes.

    Harder-to-detect visibility and a higher cover bonus are improvements;
    a move with both an improvement and a worsening is mixed.
    """
    visibility_changed = start.visibility != end.visibility
    cover_changed = start.cover_state != end.cover_state
    bonus_change = end.stealth_bonus - start.stealth_bonus

    improved = end.visibility.is_worse_than(start.visibility) or bonus_change > 0
    worsened = start.visibility.is_worse_than(end.visibility) or bonus_change < 0

    if improved and worsened:
        kind = TransitionType.MIXED
    elif improved:
        kind = TransitionType.IMPROVED
    elif worsened:
        kind = TransitionType.WORSENED
    else:
        kind = TransitionType.UNCHANGED

    return PositionTransition(
        start=start,
        end=end,
        visibility_changed=visibility_changed,
        cover_changed=cover_changed,
        stealth_bonus_change=bonus_change,
        transition_type=kind,
    )


def validate_snapshot(snapshot: PositionSnapshot) -> list[str]:
    """Problems with a snapshot; empty when it is consistent."""
    problems = []
    if not isinstance(snapshot.visibility, VisibilityState):
        problems.append(f"Invalid visibility: {snapshot.visibility!r}")
    if not isinstance(snapshot.cover_state, CoverState):
        problems.append(f"Invalid cover state: {snapshot.cover_state!r}")
    elif snapshot.stealth_bonus != snapshot.cover_state.stealth_bonus:
        problems.append(
            f"Stealth bonus {snapshot.stealth_bonus} does not match "
            f"{snapshot.cover_state.value} cover"
        )
    if snapshot.distance < 0:
        problems.append(f"Negative distance: {snapshot.distance}")
    if not isinstance(snapshot.lighting, LightLevel):
        problems.append(f"Invalid lighting: {snapshot.lighting!r}")
    if snapshot.timestamp <= 0:
        problems.append("Missing timestamp")
    return problems
