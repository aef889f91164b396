"""
Tests for the visibility calculator.

Tests:
- Lighting and senses
- Condition precedence (blinded, invisible, dazzled)
- Line of sight
- Override precedence and the safety net
"""

import pytest

from ..core.calculator import VisibilityCalculator
from ..core.state import LightLevel, Token, VisibilityState, VisionCapabilities
from ..core.world import LightSource, Wall
from .conftest import darkvision


class TestLighting:
    """Lighting at the target decides the baseline."""

    def test_lit_scene_is_observed(self, world, calculator):
        """Bright light: both directions observed."""
        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.OBSERVED
        assert calculator.calculate_by_id("rogue", "guard") == VisibilityState.OBSERVED

    def test_darkness_without_darkvision_is_hidden(self, dark_world, calculator):
        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.HIDDEN

    def test_darkvision_in_range_sees(self, dark_world, calculator):
        """Darkvision 60 ft at 40 ft in darkness: observed."""
        dark_world.set_capabilities("guard", darkvision(60))

        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.OBSERVED

    def test_darkvision_out_of_range(self, dark_world, calculator):
        dark_world.set_capabilities("guard", darkvision(30))

        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.HIDDEN

    def test_directions_are_independent(self, dark_world, calculator):
        """Only the guard has darkvision; the rogue still cannot see the guard."""
        dark_world.set_capabilities("guard", darkvision(60))

        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.OBSERVED
        assert calculator.calculate_by_id("rogue", "guard") == VisibilityState.HIDDEN

    def test_dim_light_conceals(self, dark_world, calculator):
        """Target in dim light only: concealed without low-light vision."""
        dark_world.add_light(LightSource(id="torch", x=850, y=50, dim=20))

        assert dark_world.get_light_level_at((850, 50)) == LightLevel.DIM
        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.CONCEALED

    def test_low_light_vision_in_dim_light(self, dark_world, calculator):
        dark_world.add_light(LightSource(id="torch", x=850, y=50, dim=20))
        dark_world.set_capabilities("guard", VisionCapabilities(has_low_light_vision=True))

        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.OBSERVED

    def test_bright_light_in_dark_scene(self, dark_world, calculator):
        dark_world.add_light(LightSource(id="lamp", x=850, y=50, bright=20, dim=40))

        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.OBSERVED

    def test_darkness_source_in_lit_scene(self, world, calculator):
        world.add_light(LightSource(id="spell", x=850, y=50, dim=20, darkness=True))

        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.HIDDEN


class TestConditions:
    """Senses and conditions take precedence over lighting."""

    def test_blinded_observer(self, world, calculator):
        world.set_capabilities("guard", VisionCapabilities(is_blinded=True))

        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.HIDDEN

    def test_blinded_condition(self, world, calculator):
        world.add_condition("guard", "blinded")

        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.HIDDEN

    def test_no_vision_counts_as_blinded(self, world, calculator):
        world.set_capabilities("guard", VisionCapabilities(has_vision=False))

        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.HIDDEN

    def test_invisible_target_is_undetected(self, world, calculator):
        world.add_condition("rogue", "invisible")

        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.UNDETECTED
        # The invisible token still sees normally
        assert calculator.calculate_by_id("rogue", "guard") == VisibilityState.OBSERVED

    def test_see_invisibility(self, world, calculator):
        world.add_condition("rogue", "invisible")
        world.set_capabilities("guard", VisionCapabilities(see_invisibility=True))

        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.OBSERVED

    def test_nonvisual_sense_locates_invisible_target(self, world, calculator):
        world.add_condition("rogue", "invisible")
        world.set_capabilities(
            "guard", VisionCapabilities(nonvisual_senses=[("tremorsense", 60)])
        )

        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.HIDDEN

    def test_blinded_wins_over_invisible(self, world, calculator):
        world.add_condition("rogue", "invisible")
        world.add_condition("guard", "blinded")

        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.HIDDEN

    def test_dazzled_observer(self, world, calculator):
        world.add_condition("guard", "dazzled")

        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.CONCEALED

    def test_wall_blocks_line_of_sight(self, world, calculator):
        world.add_wall(Wall(id="w1", x1=400, y1=-100, x2=400, y2=200))

        assert not world.has_line_of_sight(world.get_token("guard"), world.get_token("rogue"))
        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.HIDDEN

    def test_automation_disabled_observer(self, dark_world, calculator):
        """Per-token kill switch reports observed regardless of the scene."""
        dark_world.update_token("guard", flags={"avs": False})

        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.OBSERVED


class TestOverridesAndFailures:
    """Overrides come first; errors never escape."""

    @pytest.mark.asyncio
    async def test_override_takes_precedence(self, world, override_store):
        calculator = VisibilityCalculator(
            world=world,
            lighting=world,
            vision=world,
            conditions=world,
            overrides=override_store,
        )
        await override_store.set("guard", "rogue", VisibilityState.UNDETECTED)

        assert calculator.calculate_by_id("guard", "rogue") == VisibilityState.UNDETECTED
        assert calculator.calculate_by_id("guard", "rogue", raw=True) == VisibilityState.OBSERVED
        # The reverse direction is unaffected
        assert calculator.calculate_by_id("rogue", "guard") == VisibilityState.OBSERVED

    def test_failing_lighting_defaults_to_observed(self, world):
        class BrokenLighting:
            def get_light_level_at(self, point):
                raise RuntimeError("lighting unavailable")

        calculator = VisibilityCalculator(
            world=world, lighting=BrokenLighting(), vision=world, conditions=world
        )
        guard, rogue = world.get_token("guard"), world.get_token("rogue")

        assert calculator.calculate(guard, rogue) == VisibilityState.OBSERVED
        assert calculator.calculate_raw(guard, rogue) == VisibilityState.OBSERVED
        with pytest.raises(RuntimeError):
            calculator.decide(guard, rogue)

    def test_missing_token_is_observed(self, calculator):
        assert calculator.calculate_by_id("guard", "ghost") == VisibilityState.OBSERVED

    def test_unregistered_token_uses_default_senses(self, world, calculator):
        """A token object the world never saw gets default capabilities."""
        stranger = Token(id="stranger", x=100, y=0)
        rogue = world.get_token("rogue")

        assert calculator.calculate(stranger, rogue) == VisibilityState.OBSERVED
