"""
Tests for the override validator.

Tests:
- Staleness rules against the current world
- Debounced scheduling
- Conflict resolution (accept / reject / modify)
"""

import asyncio

import pytest

from ..core.calculator import VisibilityCalculator
from ..core.state import CoverState, OverrideSource, VisibilityState
from ..overrides.conflicts import ConflictSeverity
from ..overrides.store import Provenance
from ..overrides.validator import OverrideValidator, ResolutionAction


@pytest.fixture
def validator(world, calculator, override_store) -> OverrideValidator:
    return OverrideValidator(
        store=override_store,
        calculator=calculator,
        world=world,
        lighting=world,
        vision=world,
        debounce=0.02,
    )


class TestStalenessRules:
    """Each override touching the moved token is re-checked."""

    @pytest.mark.asyncio
    async def test_failed_stealth_in_bright_light(self, validator, override_store):
        """Undetected from stealth, target now in the open: critical, removable."""
        await override_store.set(
            "guard", "rogue", VisibilityState.UNDETECTED, Provenance(OverrideSource.STEALTH)
        )

        result = await validator.validate_token("rogue")

        assert result.checked == 1
        assert len(result.conflicts) == 1
        conflict = result.conflicts[0]
        assert conflict.removable
        assert conflict.severity == ConflictSeverity.CRITICAL
        assert conflict.current_visibility == VisibilityState.OBSERVED
        assert "stealth failed: now clearly visible in bright light" in conflict.reasons
        assert "stealth broken: moved to bright open area" in conflict.reasons
        assert result.needs_user_input
        assert validator.pending[conflict.conflict_id] is conflict

    @pytest.mark.asyncio
    async def test_manual_undetected_in_the_open(self, validator, override_store):
        await override_store.set("guard", "rogue", VisibilityState.UNDETECTED)

        result = await validator.validate_token("guard")

        reasons = result.conflicts[0].reasons
        assert "is now clearly visible with no concealment or cover" in reasons
        assert not any(r.startswith("stealth") for r in reasons)

    @pytest.mark.asyncio
    async def test_consistent_override_gives_notice(self, dark_world, validator, override_store):
        """Hidden behind cover in the dark still holds."""
        dark_world.set_cover("guard", "rogue", CoverState.STANDARD)
        await override_store.set(
            "guard", "rogue", VisibilityState.HIDDEN,
            Provenance(OverrideSource.HIDE, expected_cover=CoverState.STANDARD),
        )

        result = await validator.validate_token("rogue")

        assert result.conflicts == []
        assert len(result.notices) == 1
        assert result.notices[0].overrides[0].target_id == "rogue"
        assert not result.needs_user_input

    @pytest.mark.asyncio
    async def test_lost_cover(self, dark_world, validator, override_store):
        await override_store.set(
            "guard", "rogue", VisibilityState.HIDDEN,
            Provenance(OverrideSource.HIDE, expected_cover=CoverState.STANDARD),
        )

        result = await validator.validate_token("rogue")

        conflict = result.conflicts[0]
        assert conflict.reasons == ["has no cover (override expected cover)"]
        assert conflict.removable
        assert conflict.severity == ConflictSeverity.NONE

    @pytest.mark.asyncio
    async def test_gained_cover_is_informational(self, world, validator, override_store):
        world.set_cover("guard", "rogue", CoverState.GREATER)
        await override_store.set("guard", "rogue", VisibilityState.OBSERVED)

        result = await validator.validate_token("rogue")

        conflict = result.conflicts[0]
        assert conflict.reasons == ["now has cover (override expected no cover)"]
        assert not conflict.removable
        assert not result.needs_user_input

    @pytest.mark.asyncio
    async def test_recheck_failure_trusts_override(self, world, override_store):
        class BrokenVision:
            def get_vision_capabilities(self, token):
                raise RuntimeError("sense lookup failed")

        calculator = VisibilityCalculator(
            world=world, lighting=world, vision=BrokenVision(), conditions=world
        )
        validator = OverrideValidator(override_store, calculator, world, world, BrokenVision())
        await override_store.set("guard", "rogue", VisibilityState.UNDETECTED)

        result = await validator.validate_token("rogue")

        assert result.conflicts == []
        assert len(result.notices) == 1

    @pytest.mark.asyncio
    async def test_unknown_token(self, validator):
        result = await validator.validate_token("ghost")
        assert result.errors == ["Token ghost not found"]

    @pytest.mark.asyncio
    async def test_questions(self, validator, override_store):
        await override_store.set("guard", "rogue", VisibilityState.UNDETECTED)

        result = await validator.validate_token("rogue")
        questions = result.get_questions()

        assert len(questions) == 1
        assert questions[0]["expected"] == "undetected"
        assert questions[0]["detected"] == "observed"
        assert questions[0]["options"] == ["accept", "reject", "modify"]
        assert questions[0]["question"].startswith("The override Guard -> Rogue")


class TestDebounce:
    """Moves inside the window collapse into one validation."""

    @pytest.mark.asyncio
    async def test_repeated_moves_validate_once(self, validator, override_store):
        await override_store.set("guard", "rogue", VisibilityState.UNDETECTED)
        seen = []
        validator.on_result(seen.append)

        validator.queue("rogue")
        validator.queue("rogue")
        assert validator.is_scheduled

        await asyncio.sleep(0.1)

        assert len(seen) == 1
        assert seen[0].token_id == "rogue"
        assert not validator.is_scheduled

    @pytest.mark.asyncio
    async def test_cancel(self, validator, override_store):
        await override_store.set("guard", "rogue", VisibilityState.UNDETECTED)
        seen = []
        validator.on_result(seen.append)

        validator.queue("rogue")
        validator.cancel()
        await asyncio.sleep(0.1)

        assert seen == []
        assert validator.queued == set()

    @pytest.mark.asyncio
    async def test_flush_runs_immediately(self, validator, override_store):
        await override_store.set("guard", "rogue", VisibilityState.UNDETECTED)

        validator.queue("rogue")
        results = await validator.flush()

        assert [r.token_id for r in results] == ["rogue"]
        assert not validator.is_scheduled

    def test_queue_without_loop_waits_for_flush(self, validator):
        validator.queue("rogue")

        assert validator.queued == {"rogue"}
        assert not validator.is_scheduled

    @pytest.mark.asyncio
    async def test_async_sink(self, validator, override_store):
        await override_store.set("guard", "rogue", VisibilityState.UNDETECTED)
        seen = []

        async def sink(result):
            seen.append(result)

        validator.on_result(sink)
        validator.queue("rogue")
        await validator.flush()

        assert len(seen) == 1


class TestResolution:
    """Answers from the resolution surface."""

    @pytest.mark.asyncio
    async def test_reject_removes_override(self, validator, override_store):
        await override_store.set("guard", "rogue", VisibilityState.UNDETECTED)
        conflict = (await validator.validate_token("rogue")).conflicts[0]

        assert await validator.resolve(conflict.conflict_id, ResolutionAction.REJECT)
        assert conflict.resolved
        assert conflict.resolution == ResolutionAction.REJECT
        assert await override_store.get("guard", "rogue") is None
        assert validator.pending == {}

    @pytest.mark.asyncio
    async def test_accept_keeps_override(self, validator, override_store):
        await override_store.set("guard", "rogue", VisibilityState.UNDETECTED)
        conflict = (await validator.validate_token("rogue")).conflicts[0]

        assert await validator.resolve(conflict.conflict_id, "accept")
        record = await override_store.get("guard", "rogue")
        assert record.state == VisibilityState.UNDETECTED
        assert validator.pending == {}

    @pytest.mark.asyncio
    async def test_modify_pins_new_state(self, validator, override_store):
        await override_store.set(
            "guard", "rogue", VisibilityState.UNDETECTED, Provenance(OverrideSource.STEALTH)
        )
        conflict = (await validator.validate_token("rogue")).conflicts[0]

        assert await validator.resolve(conflict.conflict_id, "modify", "concealed")
        record = await override_store.get("guard", "rogue")
        assert record.state == VisibilityState.CONCEALED
        assert record.source == OverrideSource.STEALTH
        assert record.expected_cover == CoverState.NONE

    @pytest.mark.asyncio
    async def test_modify_requires_state(self, validator, override_store):
        await override_store.set("guard", "rogue", VisibilityState.UNDETECTED)
        conflict = (await validator.validate_token("rogue")).conflicts[0]

        assert not await validator.resolve(conflict.conflict_id, "modify")
        assert conflict.conflict_id in validator.pending

    @pytest.mark.asyncio
    async def test_unknown_conflict(self, validator):
        assert not await validator.resolve("missing", "reject")
