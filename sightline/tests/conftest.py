"""
Pytest fixtures for Sightline tests.

Scene layout used throughout (grid 100 px = 5 ft):

    guard (0, 0)  ----- 40 ft -----  rogue (800, 0)
"""

import pytest

from ..config import EngineConfig
from ..core.calculator import VisibilityCalculator
from ..core.events import EventBus
from ..core.state import Token, VisionCapabilities
from ..core.world import InMemoryWorld
from ..engine.service import VisibilityService
from ..overrides.store import OverrideStore
from ..storage.flags import InMemoryFlagStorage


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def world(bus: EventBus) -> InMemoryWorld:
    """Two tokens 40 ft apart in a lit scene."""
    world = InMemoryWorld(bus=bus)
    world.add_token(Token(id="guard", name="Guard", x=0, y=0, actor_id="actor-guard"))
    world.add_token(Token(id="rogue", name="Rogue", x=800, y=0, actor_id="actor-rogue"))
    return world


@pytest.fixture
def dark_world(world: InMemoryWorld) -> InMemoryWorld:
    """Same scene in full darkness."""
    world.set_darkness(1.0)
    return world


@pytest.fixture
def calculator(world: InMemoryWorld) -> VisibilityCalculator:
    return VisibilityCalculator(world=world, lighting=world, vision=world, conditions=world)


@pytest.fixture
def storage() -> InMemoryFlagStorage:
    return InMemoryFlagStorage()


@pytest.fixture
def override_store(world: InMemoryWorld, storage: InMemoryFlagStorage) -> OverrideStore:
    return OverrideStore(world, storage)


@pytest.fixture
def config() -> EngineConfig:
    """Config with timing shortened for tests."""
    return EngineConfig(settle_delay=0.0, validation_debounce=0.02)


@pytest.fixture
def service(world, bus, storage, config) -> VisibilityService:
    """Engine over the shared scene. Tests call `await service.start()`."""
    return VisibilityService(world, bus=bus, storage=storage, config=config)


def darkvision(range_ft=60) -> VisionCapabilities:
    return VisionCapabilities(has_darkvision=True, darkvision_range=range_ft)
