"""
Change Detector - Turns world mutations into dirty marks.

Policy per event category:
- Token moved: ignored below the movement threshold unless the token is
  mid-stealth; a significant move also queues override validation. A
  token carrying a light marks every token
- Token excluded (hp, unconscious): marked like any relevant update; the
  pass drops its automatic entries
- Token created / updated: the token itself, when a perception-relevant
  field changed
- Token deleted: dropped from the dirty set, engine state purged
- Light, wall, darkness: every token (global effect)
- Template: every token, only for light/darkness/shadow templates
- Condition / item: the owning tokens, only when the name matches the
  perception vocabulary

Handlers never raise. A failure drops that one event and is logged.
"""

from __future__ import annotations
from typing import Callable, Iterable
import math

import structlog

from ..config import EngineConfig
from ..core.events import ChangeAction, EventBus, EventName, WorldEvent
from ..core.world import WorldState


log = structlog.get_logger(__name__)


# Names of conditions, effects and items that can change what is perceived
PERCEPTION_KEYWORDS = (
    "invisible",
    "hidden",
    "concealed",
    "blinded",
    "dazzled",
    "vision",
    "darkvision",
    "low-light",
    "see",
    "sight",
    "detect",
    "blind",
    "deaf",
    "light",
    "darkness",
    "continual flame",
    "dancing lights",
    "true seeing",
)

# Item types that can carry a perception effect
PERCEPTION_ITEM_TYPES = {"condition", "effect", "spell", "feat", "action"}

EQUIPMENT_KEYWORDS = ("goggles", "glasses", "lens", "vision", "sight", "eye")

TEMPLATE_KEYWORDS = ("light", "darkness", "shadow")

LIGHT_FIELDS = {"config", "x", "y", "disabled", "hidden", "bright", "dim", "darkness"}
TEMPLATE_FIELDS = {"x", "y", "config", "hidden"}
TOKEN_FIELDS = {
    "light",
    "sight",
    "hidden",
    "hp",
    "size",
    "width",
    "height",
    "actor_id",
    "conditions",
    "flags",
}


def matches_keywords(name: str, keywords: Iterable[str]) -> bool:
    lowered = (name or "").lower()
    return any(keyword in lowered for keyword in keywords)


class ChangeDetector:
    """
    Subscribes to the event bus and marks affected tokens dirty.

    Usage:
        detector = ChangeDetector(bus, world, scheduler, config)
        detector.attach()
    """

    def __init__(
        self,
        bus: EventBus,
        world: WorldState,
        scheduler,
        config: EngineConfig | None = None,
        on_moved: Callable[[str], None] | None = None,
        on_deleted: Callable[[str], None] | None = None,
    ):
        self.bus = bus
        self.world = world
        self.scheduler = scheduler
        self.config = config or EngineConfig()
        self.on_moved = on_moved
        self.on_deleted = on_deleted

        self.enabled = True
        self._unsubscribe: list[Callable[[], None]] = []
        self._handlers = {
            EventName.TOKEN_MOVED: self._token_moved,
            EventName.TOKEN_CREATED: self._token_created,
            EventName.TOKEN_UPDATED: self._token_updated,
            EventName.TOKEN_DELETED: self._token_deleted,
            EventName.LIGHT_CHANGED: self._light_changed,
            EventName.WALL_CHANGED: self._wall_changed,
            EventName.DARKNESS_CHANGED: self._darkness_changed,
            EventName.TEMPLATE_CHANGED: self._template_changed,
            EventName.CONDITION_CHANGED: self._condition_changed,
            EventName.ITEM_CHANGED: self._item_changed,
        }

    def attach(self) -> None:
        if self._unsubscribe:
            return
        for name in self._handlers:
            self._unsubscribe.append(self.bus.subscribe(name, self.handle))

    def detach(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

    def handle(self, event: WorldEvent) -> None:
        """Dispatch one event. Never raises."""
        if not self.enabled:
            return
        handler = self._handlers.get(event.name)
        if handler is None:
            return
        try:
            handler(event)
        except Exception as e:
            log.warning(
                "change_detection_failed",
                event_name=event.name.value,
                entity_id=event.entity_id,
                error=str(e),
                exc_info=True,
            )

    # =========================================================================
    # Tokens
    # =========================================================================

    def _token_moved(self, event: WorldEvent):
        if not self.config.update_on_movement:
            return
        token_id = event.entity_id
        if not self.is_significant_move(event):
            log.debug("move_ignored", token_id=token_id)
            return

        token = self.world.get_token(token_id)
        if token is not None and self.config.update_on_lighting and self.world.emits_light(token):
            # A carried light relights every token around it
            self.scheduler.mark_all_dirty()
        else:
            self.scheduler.mark_dirty(token_id)
        if self.on_moved:
            self.on_moved(token_id)

    def is_significant_move(self, event: WorldEvent) -> bool:
        token = self.world.get_token(event.entity_id)
        if token is not None and token.stealth_active:
            return True

        old_x = event.previous.get("x")
        old_y = event.previous.get("y")
        if old_x is None or old_y is None:
            return True
        new_x = event.changes.get("x", event.data.get("x", old_x))
        new_y = event.changes.get("y", event.data.get("y", old_y))
        return math.hypot(new_x - old_x, new_y - old_y) >= self.config.min_movement

    def _token_created(self, event: WorldEvent):
        self.scheduler.mark_dirty(event.entity_id)

    def _token_updated(self, event: WorldEvent):
        changed = set(event.changes)
        if changed & {"x", "y"}:
            self._token_moved(event)
            changed -= {"x", "y"}
        if changed & TOKEN_FIELDS:
            self.scheduler.mark_dirty(event.entity_id)

    def _token_deleted(self, event: WorldEvent):
        self.scheduler.discard(event.entity_id)
        if self.on_deleted:
            self.on_deleted(event.entity_id)

    # =========================================================================
    # Global changes
    # =========================================================================

    def _light_changed(self, event: WorldEvent):
        if not self.config.update_on_lighting:
            return
        if event.action == ChangeAction.UPDATE and not (set(event.changes) & LIGHT_FIELDS):
            return
        self.scheduler.mark_all_dirty()

    def _wall_changed(self, event: WorldEvent):
        self.scheduler.mark_all_dirty()

    def _darkness_changed(self, event: WorldEvent):
        if not self.config.update_on_lighting:
            return
        self.scheduler.mark_all_dirty()

    def _template_changed(self, event: WorldEvent):
        if not matches_keywords(event.data.get("name", ""), TEMPLATE_KEYWORDS):
            return
        if event.action == ChangeAction.UPDATE and not (set(event.changes) & TEMPLATE_FIELDS):
            return
        self.scheduler.mark_all_dirty()

    # =========================================================================
    # Conditions, effects and items
    # =========================================================================

    def _condition_changed(self, event: WorldEvent):
        if not matches_keywords(event.data.get("name", ""), PERCEPTION_KEYWORDS):
            return
        self._mark_owner(event)

    def _item_changed(self, event: WorldEvent):
        name = event.data.get("name", "")
        item_type = (event.data.get("type") or "").lower()

        if item_type == "equipment":
            relevant = matches_keywords(name, EQUIPMENT_KEYWORDS) or "equipped" in event.changes
        else:
            relevant = (
                item_type in PERCEPTION_ITEM_TYPES
                and matches_keywords(name, PERCEPTION_KEYWORDS)
            )
        if relevant:
            self._mark_owner(event)

    def _mark_owner(self, event: WorldEvent):
        token_id = event.data.get("token_id")
        if token_id:
            self.scheduler.mark_dirty(token_id)
            return
        actor_id = event.data.get("actor_id")
        if not actor_id:
            return
        token_ids = [t.id for t in self.world.tokens() if t.actor_id == actor_id]
        if token_ids:
            self.scheduler.mark_many(token_ids)
