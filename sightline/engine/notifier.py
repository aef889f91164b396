"""
Refresh Notifier - Outbound signals to whatever renders or replicates state.

Two signals:
- visibility_changed(observer_id, target_id, state): once per changed pair
- refresh_perception(): once per batch, however many pairs changed
"""

from __future__ import annotations
from typing import Callable

import structlog

from ..core.state import VisibilityState


log = structlog.get_logger(__name__)


ChangeListener = Callable[[str, str, VisibilityState], None]
RefreshListener = Callable[[], None]


class RefreshNotifier:
    """Fan-out of engine signals. A failing listener never stops the rest."""

    def __init__(self):
        self._change_listeners: list[ChangeListener] = []
        self._refresh_listeners: list[RefreshListener] = []
        self.refresh_count = 0
        self.change_count = 0

    def on_visibility_changed(self, listener: ChangeListener) -> Callable[[], None]:
        self._change_listeners.append(listener)
        return lambda: self._discard(self._change_listeners, listener)

    def on_refresh(self, listener: RefreshListener) -> Callable[[], None]:
        self._refresh_listeners.append(listener)
        return lambda: self._discard(self._refresh_listeners, listener)

    def visibility_changed(self, observer_id: str, target_id: str, state: VisibilityState):
        self.change_count += 1
        for listener in list(self._change_listeners):
            try:
                listener(observer_id, target_id, state)
            except Exception as e:
                log.warning(
                    "change_listener_failed",
                    observer_id=observer_id,
                    target_id=target_id,
                    error=str(e),
                )

    def refresh_perception(self):
        self.refresh_count += 1
        for listener in list(self._refresh_listeners):
            try:
                listener()
            except Exception as e:
                log.warning("refresh_listener_failed", error=str(e))

    @staticmethod
    def _discard(listeners: list, listener):
        if listener in listeners:
            listeners.remove(listener)
