"""
Tests for the override store and flag storage backends.

Tests:
- Set / get / remove / clear_all
- Validation failures as False returns
- Pair helpers (one-way stealth, symmetric otherwise)
- Persistence round trip through JSON files
"""

import json

import pytest

from ..core.state import CoverState, OverrideSource, PairKey, VisibilityState
from ..overrides.store import FLAG_PREFIX, OverrideStore, PairChange, Provenance, flag_key
from ..storage.flags import InMemoryFlagStorage, JsonFileFlagStorage


class TestOverrideStore:
    """Core operations."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, override_store, storage):
        ok = await override_store.set(
            "guard", "rogue", "hidden", Provenance(OverrideSource.HIDE, CoverState.STANDARD)
        )

        assert ok
        record = await override_store.get("guard", "rogue")
        assert record.state == VisibilityState.HIDDEN
        assert record.source == OverrideSource.HIDE
        assert record.observer_name == "Guard"

        # Persisted on the target, keyed by observer
        flag = await storage.get_flag("rogue", flag_key("guard"))
        assert flag["state"] == "hidden"
        assert flag["expectedCover"] == "standard"

    @pytest.mark.asyncio
    async def test_invalid_state_rejected(self, override_store, storage):
        assert not await override_store.set("guard", "rogue", "invisible")
        assert await storage.token_ids() == []

    @pytest.mark.asyncio
    async def test_unknown_token_rejected(self, override_store):
        assert not await override_store.set("guard", "ghost", VisibilityState.HIDDEN)
        assert override_store.peek("guard", "ghost") is None

    @pytest.mark.asyncio
    async def test_storage_failure_leaves_cache_untouched(self, world):
        class FailingStorage(InMemoryFlagStorage):
            async def set_flag(self, token_id, key, value):
                raise OSError("disk full")

        store = OverrideStore(world, FailingStorage())

        assert not await store.set("guard", "rogue", VisibilityState.HIDDEN)
        assert store.peek("guard", "rogue") is None

    @pytest.mark.asyncio
    async def test_get_falls_back_to_storage(self, world, storage):
        await OverrideStore(world, storage).set("guard", "rogue", VisibilityState.CONCEALED)

        fresh = OverrideStore(world, storage)
        assert fresh.peek("guard", "rogue") is None

        record = await fresh.get("guard", "rogue")
        assert record.state == VisibilityState.CONCEALED
        assert fresh.peek("guard", "rogue") is not None

    @pytest.mark.asyncio
    async def test_replace_existing(self, override_store):
        await override_store.set("guard", "rogue", VisibilityState.HIDDEN)
        await override_store.set("guard", "rogue", VisibilityState.UNDETECTED)

        record = await override_store.get("guard", "rogue")
        assert record.state == VisibilityState.UNDETECTED
        assert len(override_store.records()) == 1

    @pytest.mark.asyncio
    async def test_remove(self, override_store):
        await override_store.set("guard", "rogue", VisibilityState.HIDDEN)

        assert await override_store.remove("guard", "rogue")
        assert not await override_store.remove("guard", "rogue")
        assert await override_store.get("guard", "rogue") is None

    @pytest.mark.asyncio
    async def test_clear_all_both_directions(self, world, override_store):
        from ..core.state import Token

        world.add_token(Token(id="scout", name="Scout", x=0, y=400))
        await override_store.set("guard", "rogue", VisibilityState.HIDDEN)
        await override_store.set("rogue", "guard", VisibilityState.CONCEALED)
        await override_store.set("scout", "guard", VisibilityState.HIDDEN)

        removed = await override_store.clear_all("rogue")

        assert removed == 2
        remaining = [r.key for r in override_store.records()]
        assert remaining == [PairKey("scout", "guard")]

    @pytest.mark.asyncio
    async def test_list_all_sorted_by_creation(self, override_store):
        await override_store.set("guard", "rogue", VisibilityState.HIDDEN)
        await override_store.set("rogue", "guard", VisibilityState.CONCEALED)

        records = await override_store.list_all("guard")

        assert [r.key for r in records] == [PairKey("guard", "rogue"), PairKey("rogue", "guard")]

    @pytest.mark.asyncio
    async def test_load_skips_malformed_flags(self, world, storage):
        await storage.set_flag("rogue", flag_key("guard"), {"state": "hidden"})
        await storage.set_flag("rogue", flag_key("scout"), {"state": "bogus"})
        await storage.set_flag("rogue", "unrelated", {"state": "hidden"})

        store = OverrideStore(world, storage)
        count = await store.load()

        assert count == 1
        assert store.peek("guard", "rogue").state == VisibilityState.HIDDEN

    @pytest.mark.asyncio
    async def test_clear_scene(self, override_store, storage):
        await override_store.set("guard", "rogue", VisibilityState.HIDDEN)
        await override_store.set("rogue", "guard", VisibilityState.HIDDEN)

        assert await override_store.clear_scene() == 2
        assert override_store.records() == []
        for token_id in await storage.token_ids():
            flags = await storage.get_flags(token_id)
            assert not any(k.startswith(FLAG_PREFIX) for k in flags)

    def test_evict_is_cache_only(self, override_store):
        assert override_store.evict("guard") == 0


class TestPairHelpers:
    """Per-action helpers."""

    @pytest.mark.asyncio
    async def test_stealth_is_one_way(self, override_store):
        written = await override_store.apply_for_stealth(
            "rogue", [PairChange(target_id="guard", state=VisibilityState.UNDETECTED)]
        )

        assert written == [PairKey("rogue", "guard")]
        assert override_store.peek("guard", "rogue") is None

    @pytest.mark.asyncio
    async def test_seek_is_symmetric(self, override_store):
        written = await override_store.apply_for_seek(
            "guard", [PairChange(target_id="rogue", state=VisibilityState.OBSERVED)]
        )

        assert set(written) == {PairKey("guard", "rogue"), PairKey("rogue", "guard")}
        record = override_store.peek("rogue", "guard")
        assert record.source == OverrideSource.SEEK
        assert record.expected_concealment is False

    @pytest.mark.asyncio
    async def test_point_out_pins_hidden(self, override_store):
        await override_store.apply_for_point_out("guard", "rogue")

        record = override_store.peek("guard", "rogue")
        assert record.state == VisibilityState.HIDDEN
        assert record.source == OverrideSource.POINT_OUT
        assert record.expects_concealment

    @pytest.mark.asyncio
    async def test_consequences_clear_both_directions(self, override_store):
        await override_store.apply_for_hide(
            "rogue", [PairChange(target_id="guard", state=VisibilityState.HIDDEN)]
        )

        removed = await override_store.clear_for_consequences("rogue", ["guard"])

        assert removed == 2
        assert override_store.records() == []


class TestJsonFileFlagStorage:
    """File-backed flags."""

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path):
        storage = JsonFileFlagStorage(base_dir=tmp_path)
        await storage.set_flag("rogue", "override-from-guard", {"state": "hidden"})

        reopened = JsonFileFlagStorage(base_dir=tmp_path)
        assert await reopened.get_flag("rogue", "override-from-guard") == {"state": "hidden"}
        assert await reopened.token_ids() == ["rogue"]

    @pytest.mark.asyncio
    async def test_unset_last_flag_removes_file(self, tmp_path):
        storage = JsonFileFlagStorage(base_dir=tmp_path)
        await storage.set_flag("rogue", "k", 1)
        await storage.unset_flag("rogue", "k")

        assert list(storage.root.glob("*.json")) == []

    @pytest.mark.asyncio
    async def test_corrupt_file_is_dropped(self, tmp_path):
        storage = JsonFileFlagStorage(base_dir=tmp_path)
        await storage.set_flag("rogue", "k", 1)
        path = storage._path("rogue")
        path.write_text("{not json")

        assert await storage.get_flags("rogue") == {}
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_store_survives_restart(self, world, tmp_path):
        """Overrides written through one store are loaded by the next."""
        store = OverrideStore(world, JsonFileFlagStorage(base_dir=tmp_path))
        await store.set("guard", "rogue", VisibilityState.UNDETECTED)

        restarted = OverrideStore(world, JsonFileFlagStorage(base_dir=tmp_path))
        assert await restarted.load() == 1
        assert restarted.peek("guard", "rogue").state == VisibilityState.UNDETECTED

        data = json.loads(restarted.storage._path("rogue").read_text())
        assert data["token_id"] == "rogue"
