"""
World State - Narrow query interface onto the host scene.

The engine never touches rendering or geometry primitives directly. It
depends on the protocols below, which the host implements:

    LightingQuery   get_light_level_at(point)
    VisionQuery     get_vision_capabilities(token)
    ConditionQuery  get_conditions(token)
    WorldState      tokens, positions, line of sight, cover

InMemoryWorld is a complete reference implementation used by tests and the
HTTP surface. It models light sources with bright/dim radii, darkness
sources, scene darkness with global illumination, sight-blocking walls and
an explicit cover table, and publishes a WorldEvent for every mutation.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol
import math

from .events import ChangeAction, EventBus, EventName, WorldEvent
from .state import CoverState, LightLevel, PairKey, Token, VisionCapabilities


Point = tuple[float, float]

# Scenes at or below this base illumination count as dark
DARK_THRESHOLD = 0.25


class LightingQuery(Protocol):
    def get_light_level_at(self, point: Point) -> LightLevel: ...


class VisionQuery(Protocol):
    def get_vision_capabilities(self, token: Token) -> VisionCapabilities: ...


class ConditionQuery(Protocol):
    def get_conditions(self, token: Token) -> set[str]: ...


class WorldState(Protocol):
    def get_token(self, token_id: str) -> Token | None: ...

    def tokens(self) -> list[Token]: ...

    def get_position(self, token: Token) -> Point: ...

    def distance(self, a: Token, b: Token) -> float: ...

    def has_line_of_sight(self, a: Token, b: Token) -> bool: ...

    def detect_cover(self, a: Token, b: Token) -> CoverState: ...

    def emits_light(self, token: Token) -> bool: ...


# =============================================================================
# Scene objects
# =============================================================================

@dataclass
class LightSource:
    """
    A light (or darkness) source.

    Radii are in scene units (feet). A source attached to a token follows
    that token's center.
    """
    id: str
    x: float = 0.0
    y: float = 0.0
    bright: float = 0.0
    dim: float = 0.0
    darkness: bool = False
    disabled: bool = False
    hidden: bool = False
    token_id: str | None = None

    @property
    def emits(self) -> bool:
        return not self.disabled and not self.hidden and (self.bright > 0 or self.dim > 0)


@dataclass
class Wall:
    """A wall segment; only sight-blocking walls affect line of sight."""
    id: str
    x1: float
    y1: float
    x2: float
    y2: float
    blocks_sight: bool = True


def _orientation(p: Point, q: Point, r: Point) -> float:
    return (q[0] - p[0]) * (r[1] - p[1]) - (q[1] - p[1]) * (r[0] - p[0])


def segments_intersect(a1: Point, a2: Point, b1: Point, b2: Point) -> bool:
    """Proper or touching intersection of segments a1-a2 and b1-b2."""
    d1 = _orientation(b1, b2, a1)
    d2 = _orientation(b1, b2, a2)
    d3 = _orientation(a1, a2, b1)
    d4 = _orientation(a1, a2, b2)

    if ((d1 > 0 > d2) or (d1 < 0 < d2)) and ((d3 > 0 > d4) or (d3 < 0 < d4)):
        return True

    def on_segment(p: Point, q: Point, r: Point) -> bool:
        return (
            min(p[0], q[0]) <= r[0] <= max(p[0], q[0])
            and min(p[1], q[1]) <= r[1] <= max(p[1], q[1])
        )

    if d1 == 0 and on_segment(b1, b2, a1):
        return True
    if d2 == 0 and on_segment(b1, b2, a2):
        return True
    if d3 == 0 and on_segment(a1, a2, b1):
        return True
    if d4 == 0 and on_segment(a1, a2, b2):
        return True
    return False


# =============================================================================
# In-memory world
# =============================================================================

@dataclass
class InMemoryWorld:
    """
    A scene held entirely in memory.

    Usage:
        world = InMemoryWorld(bus=bus)
        world.add_token(Token(id="a", x=0, y=0), VisionCapabilities(has_darkvision=True))
        world.set_darkness(1.0)
        world.move_token("a", 500, 0)   # publishes tokenMoved
    """
    bus: EventBus | None = None

    grid_size: float = 100.0  # Pixels per grid square
    grid_distance: float = 5.0  # Scene units (feet) per grid square

    darkness: float = 0.0
    global_illumination: bool = True

    _tokens: dict[str, Token] = field(default_factory=dict)
    _capabilities: dict[str, VisionCapabilities] = field(default_factory=dict)
    _lights: dict[str, LightSource] = field(default_factory=dict)
    _walls: dict[str, Wall] = field(default_factory=dict)
    _cover: dict[PairKey, CoverState] = field(default_factory=dict)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_token(self, token_id: str) -> Token | None:
        return self._tokens.get(token_id)

    def tokens(self) -> list[Token]:
        return list(self._tokens.values())

    def tokens_for_actor(self, actor_id: str) -> list[Token]:
        return [t for t in self._tokens.values() if t.actor_id == actor_id]

    def get_position(self, token: Token) -> Point:
        return token.center(self.grid_size)

    def distance(self, a: Token, b: Token) -> float:
        """Center-to-center distance in scene units."""
        (ax, ay), (bx, by) = self.get_position(a), self.get_position(b)
        return math.hypot(bx - ax, by - ay) / self.grid_size * self.grid_distance

    def get_vision_capabilities(self, token: Token) -> VisionCapabilities:
        return self._capabilities.get(token.id, VisionCapabilities())

    def get_conditions(self, token: Token) -> set[str]:
        return {c.lower() for c in token.conditions}

    def get_light_level_at(self, point: Point) -> LightLevel:
        """
        Lighting at a point.

        Base illumination comes from scene darkness when global illumination
        is on. Light sources raise it to dim or bright; any darkness source
        covering the point forces darkness.
        """
        base = (1.0 - self.darkness) if self.global_illumination else 0.0
        level = LightLevel.BRIGHT if base > DARK_THRESHOLD else LightLevel.DARKNESS

        pixels_per_unit = self.grid_size / self.grid_distance
        for light in self._lights.values():
            if light.hidden or light.disabled:
                continue
            lx, ly = self._light_origin(light)
            dist = math.hypot(point[0] - lx, point[1] - ly)
            bright_px = light.bright * pixels_per_unit
            dim_px = light.dim * pixels_per_unit

            if light.darkness:
                if dist <= max(bright_px, dim_px):
                    return LightLevel.DARKNESS
                continue

            if dist <= bright_px:
                level = LightLevel.BRIGHT
            elif dist <= dim_px and level != LightLevel.BRIGHT:
                level = LightLevel.DIM

        return level

    def has_line_of_sight(self, a: Token, b: Token) -> bool:
        pa, pb = self.get_position(a), self.get_position(b)
        for wall in self._walls.values():
            if not wall.blocks_sight:
                continue
            if segments_intersect(pa, pb, (wall.x1, wall.y1), (wall.x2, wall.y2)):
                return False
        return True

    def detect_cover(self, a: Token, b: Token) -> CoverState:
        return self._cover.get(PairKey(a.id, b.id), CoverState.NONE)

    def emits_light(self, token: Token) -> bool:
        """Whether an active light or darkness source follows this token."""
        return any(
            light.token_id == token.id and light.emits
            for light in self._lights.values()
        )

    def _light_origin(self, light: LightSource) -> Point:
        if light.token_id:
            token = self._tokens.get(light.token_id)
            if token:
                return self.get_position(token)
        return (light.x, light.y)

    # -------------------------------------------------------------------------
    # Mutations (each publishes one event)
    # -------------------------------------------------------------------------

    def _publish(self, event: WorldEvent):
        if self.bus:
            self.bus.publish(event)

    def add_token(self, token: Token, capabilities: VisionCapabilities | None = None) -> Token:
        self._tokens[token.id] = token
        if capabilities:
            self._capabilities[token.id] = capabilities
        self._publish(WorldEvent(
            name=EventName.TOKEN_CREATED,
            entity_id=token.id,
            action=ChangeAction.CREATE,
            data=self._token_data(token),
        ))
        return token

    def move_token(self, token_id: str, x: float, y: float) -> None:
        token = self._tokens[token_id]
        previous = {"x": token.x, "y": token.y}
        token.x, token.y = x, y
        self._publish(WorldEvent(
            name=EventName.TOKEN_MOVED,
            entity_id=token_id,
            data=self._token_data(token),
            changes={"x": x, "y": y},
            previous=previous,
        ))

    def update_token(self, token_id: str, **changes: Any) -> None:
        """Update token attributes (hp, flags, size, name...)."""
        token = self._tokens[token_id]
        previous = {}
        for key, value in changes.items():
            previous[key] = getattr(token, key, None)
            setattr(token, key, value)
        self._publish(WorldEvent(
            name=EventName.TOKEN_UPDATED,
            entity_id=token_id,
            data=self._token_data(token),
            changes=dict(changes),
            previous=previous,
        ))

    def set_capabilities(self, token_id: str, capabilities: VisionCapabilities) -> None:
        self._capabilities[token_id] = capabilities
        token = self._tokens[token_id]
        self._publish(WorldEvent(
            name=EventName.TOKEN_UPDATED,
            entity_id=token_id,
            data=self._token_data(token),
            changes={"sight": capabilities},
        ))

    def remove_token(self, token_id: str) -> None:
        token = self._tokens.pop(token_id, None)
        self._capabilities.pop(token_id, None)
        self._cover = {k: v for k, v in self._cover.items() if not k.touches(token_id)}
        if token is None:
            return
        self._publish(WorldEvent(
            name=EventName.TOKEN_DELETED,
            entity_id=token_id,
            action=ChangeAction.DELETE,
            data=self._token_data(token),
        ))

    def add_condition(self, token_id: str, name: str) -> None:
        token = self._tokens[token_id]
        token.conditions.add(name)
        self._publish_condition(token, name, ChangeAction.CREATE)

    def remove_condition(self, token_id: str, name: str) -> None:
        token = self._tokens[token_id]
        token.conditions.discard(name)
        self._publish_condition(token, name, ChangeAction.DELETE)

    def _publish_condition(self, token: Token, name: str, action: ChangeAction):
        self._publish(WorldEvent(
            name=EventName.CONDITION_CHANGED,
            entity_id=f"{token.id}.{name}",
            action=action,
            data={
                "name": name,
                "type": "condition",
                "token_id": token.id,
                "actor_id": token.actor_id,
            },
        ))

    def add_light(self, light: LightSource) -> None:
        self._lights[light.id] = light
        self._publish(WorldEvent(
            name=EventName.LIGHT_CHANGED,
            entity_id=light.id,
            action=ChangeAction.CREATE,
            data=vars(light).copy(),
        ))

    def update_light(self, light_id: str, **changes: Any) -> None:
        light = self._lights[light_id]
        previous = {key: getattr(light, key) for key in changes}
        for key, value in changes.items():
            setattr(light, key, value)
        self._publish(WorldEvent(
            name=EventName.LIGHT_CHANGED,
            entity_id=light_id,
            data=vars(light).copy(),
            changes=dict(changes),
            previous=previous,
        ))

    def remove_light(self, light_id: str) -> None:
        light = self._lights.pop(light_id, None)
        if light:
            self._publish(WorldEvent(
                name=EventName.LIGHT_CHANGED,
                entity_id=light_id,
                action=ChangeAction.DELETE,
                data=vars(light).copy(),
            ))

    def add_wall(self, wall: Wall) -> None:
        self._walls[wall.id] = wall
        self._publish(WorldEvent(
            name=EventName.WALL_CHANGED,
            entity_id=wall.id,
            action=ChangeAction.CREATE,
            data=vars(wall).copy(),
        ))

    def remove_wall(self, wall_id: str) -> None:
        wall = self._walls.pop(wall_id, None)
        if wall:
            self._publish(WorldEvent(
                name=EventName.WALL_CHANGED,
                entity_id=wall_id,
                action=ChangeAction.DELETE,
                data=vars(wall).copy(),
            ))

    def set_darkness(self, darkness: float, global_illumination: bool | None = None) -> None:
        previous = {"darkness": self.darkness}
        self.darkness = darkness
        if global_illumination is not None:
            self.global_illumination = global_illumination
        self._publish(WorldEvent(
            name=EventName.DARKNESS_CHANGED,
            data={"darkness": darkness, "global_illumination": self.global_illumination},
            changes={"darkness": darkness},
            previous=previous,
        ))

    def set_cover(self, observer_id: str, target_id: str, cover: CoverState) -> None:
        """Cover of target from observer. Geometry-derived, so no event."""
        self._cover[PairKey(observer_id, target_id)] = cover

    def load_tokens(self, tokens: Iterable[tuple[Token, VisionCapabilities | None]]):
        for token, caps in tokens:
            self.add_token(token, caps)

    def _token_data(self, token: Token) -> dict[str, Any]:
        return {
            "id": token.id,
            "name": token.name,
            "x": token.x,
            "y": token.y,
            "actor_id": token.actor_id,
            "flags": dict(token.flags),
        }
