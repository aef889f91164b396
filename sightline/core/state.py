"""
Visibility State - Core value types shared by every component.

Design principles:
- Ordered: visibility states compare by how hard the target is to detect
- Serializable: override records round-trip through flag storage as dicts
- Host-agnostic: tokens are plain records, the host owns their lifecycle
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
import time


NAMESPACE = "sightline"


class VisibilityState(Enum):
    """What an observer can currently detect about a target."""
    OBSERVED = "observed"
    CONCEALED = "concealed"
    HIDDEN = "hidden"
    UNDETECTED = "undetected"

    @property
    def rank(self) -> int:
        """Ordinal 1..4, higher is harder to detect."""
        return _VISIBILITY_RANK[self]

    def is_worse_than(self, other: VisibilityState) -> bool:
        """True when this state is harder to detect than `other`."""
        return self.rank > other.rank

    @property
    def is_concealing(self) -> bool:
        return self in (VisibilityState.CONCEALED, VisibilityState.HIDDEN)

    @classmethod
    def coerce(cls, value: Any) -> VisibilityState:
        """Accept a state or its string value; raise ValueError otherwise."""
        if isinstance(value, cls):
            return value
        return cls(value)


_VISIBILITY_RANK = {
    VisibilityState.OBSERVED: 1,
    VisibilityState.CONCEALED: 2,
    VisibilityState.HIDDEN: 3,
    VisibilityState.UNDETECTED: 4,
}


class CoverState(Enum):
    """Physical obstruction between observer and target."""
    NONE = "none"
    LESSER = "lesser"
    STANDARD = "standard"
    GREATER = "greater"

    @property
    def stealth_bonus(self) -> int:
        return _COVER_BONUS[self]

    @property
    def can_hide(self) -> bool:
        """Standard and greater cover are enough to hide behind."""
        return self in (CoverState.STANDARD, CoverState.GREATER)


_COVER_BONUS = {
    CoverState.NONE: 0,
    CoverState.LESSER: 0,
    CoverState.STANDARD: 2,
    CoverState.GREATER: 4,
}


class LightLevel(Enum):
    """Lighting at a point. UNKNOWN only appears in position snapshots."""
    BRIGHT = "bright"
    DIM = "dim"
    DARKNESS = "darkness"
    UNKNOWN = "unknown"


class OverrideSource(Enum):
    """Where a pinned visibility value came from."""
    MANUAL = "manual"
    STEALTH = "stealth"
    HIDE = "hide"
    SEEK = "seek"
    POINT_OUT = "point_out"
    DIVERSION = "diversion"
    TAKE_COVER = "take_cover"
    CONSEQUENCES = "consequences"

    @property
    def is_stealth(self) -> bool:
        return self in (OverrideSource.STEALTH, OverrideSource.HIDE)

    @property
    def is_detection(self) -> bool:
        return self in (OverrideSource.SEEK, OverrideSource.POINT_OUT)

    @property
    def is_one_way(self) -> bool:
        """Stealth applies observer->target only; other sources go both ways."""
        return self == OverrideSource.STEALTH


@dataclass
class Token:
    """
    A game piece placed in the scene.

    The host creates and destroys tokens; the engine only reads them.
    """
    id: str
    name: str = ""
    x: float = 0.0
    y: float = 0.0
    size: float = 1.0  # In grid squares
    actor_id: str | None = None

    hp: int | None = None
    conditions: set[str] = field(default_factory=set)

    # Namespaced per-token flags (host flag bag)
    flags: dict[str, Any] = field(default_factory=dict)

    def center(self, grid_size: float = 100.0) -> tuple[float, float]:
        """Center point of the token in scene pixels."""
        half = self.size * grid_size / 2
        return (self.x + half, self.y + half)

    def has_condition(self, name: str) -> bool:
        return name.lower() in {c.lower() for c in self.conditions}

    @property
    def automation_disabled(self) -> bool:
        """Per-token kill switch: flags['avs'] set to False."""
        return self.flags.get("avs") is False

    @property
    def stealth_active(self) -> bool:
        """Token is mid-way through a stealth action."""
        return bool(self.flags.get("sneak_active"))


def is_excluded(token: Token) -> bool:
    """
    Defeated or unconscious tokens take no part in visibility.

    A token flagged `include_when_defeated` is exempt.
    """
    if token.flags.get("include_when_defeated"):
        return False
    if token.hp is not None and token.hp <= 0:
        return True
    return token.has_condition("unconscious") or token.has_condition("dead")


@dataclass
class VisionCapabilities:
    """
    What senses an observer has.

    Ranges are in grid units (feet on a 5 ft grid); None means unlimited.
    """
    has_vision: bool = True
    has_darkvision: bool = False
    darkvision_range: float | None = None
    has_low_light_vision: bool = False
    low_light_range: float | None = None

    is_blinded: bool = False
    is_dazzled: bool = False
    see_invisibility: bool = False

    # (sense name, range) pairs, e.g. ("tremorsense", 30)
    nonvisual_senses: list[tuple[str, float]] = field(default_factory=list)

    def darkvision_reaches(self, distance: float) -> bool:
        if not self.has_darkvision:
            return False
        return self.darkvision_range is None or distance <= self.darkvision_range

    def low_light_reaches(self, distance: float) -> bool:
        if not self.has_low_light_vision:
            return False
        return self.low_light_range is None or distance <= self.low_light_range

    def nonvisual_reaches(self, distance: float) -> bool:
        return any(distance <= rng for _, rng in self.nonvisual_senses)


@dataclass(frozen=True)
class PairKey:
    """
    Ordered (observer, target) composite key.

    Serialized as "observer->target" wherever a string key is required.
    """
    observer_id: str
    target_id: str

    SEPARATOR = "->"

    def __str__(self) -> str:
        return f"{self.observer_id}{self.SEPARATOR}{self.target_id}"

    def reversed(self) -> PairKey:
        return PairKey(self.target_id, self.observer_id)

    def touches(self, token_id: str) -> bool:
        return token_id in (self.observer_id, self.target_id)

    @classmethod
    def parse(cls, value: str) -> PairKey:
        observer_id, sep, target_id = value.partition(cls.SEPARATOR)
        if not sep or not observer_id or not target_id:
            raise ValueError(f"Malformed pair key: {value!r}")
        return cls(observer_id, target_id)


@dataclass
class OverrideRecord:
    """
    A pinned visibility value for one ordered pair.

    While present it is the sole source of truth for that direction.
    """
    observer_id: str
    target_id: str
    state: VisibilityState
    source: OverrideSource = OverrideSource.MANUAL
    created_at: float = field(default_factory=time.time)

    # Justification recorded when the override was set
    expected_cover: CoverState | None = None
    expected_concealment: bool | None = None

    observer_name: str = ""
    target_name: str = ""

    @property
    def key(self) -> PairKey:
        return PairKey(self.observer_id, self.target_id)

    @property
    def expects_cover(self) -> bool:
        return self.expected_cover is not None and self.expected_cover.can_hide

    @property
    def expects_concealment(self) -> bool:
        if self.expected_concealment is not None:
            return self.expected_concealment
        return self.state in (
            VisibilityState.CONCEALED,
            VisibilityState.HIDDEN,
            VisibilityState.UNDETECTED,
        )

    def to_flag(self) -> dict[str, Any]:
        """Persisted shape, stored on the target keyed by observer id."""
        return {
            "state": self.state.value,
            "source": self.source.value,
            "expectedCover": self.expected_cover.value if self.expected_cover else None,
            "expectedConcealment": self.expected_concealment,
            "observerName": self.observer_name,
            "targetName": self.target_name,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_flag(cls, observer_id: str, target_id: str, data: dict[str, Any]) -> OverrideRecord:
        cover = data.get("expectedCover")
        return cls(
            observer_id=observer_id,
            target_id=target_id,
            state=VisibilityState(data["state"]),
            source=OverrideSource(data.get("source", "manual")),
            created_at=data.get("createdAt") or time.time(),
            expected_cover=CoverState(cover) if cover else None,
            expected_concealment=data.get("expectedConcealment"),
            observer_name=data.get("observerName", ""),
            target_name=data.get("targetName", ""),
        )
