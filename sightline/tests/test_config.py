"""
Tests for engine configuration.
"""

from ..config import EngineConfig
from ..engine.service import VisibilityService
from ..storage.flags import InMemoryFlagStorage, JsonFileFlagStorage


class TestEngineConfig:

    def test_defaults(self):
        config = EngineConfig()

        assert config.grid_size == 100.0
        assert config.min_movement == 50.0
        assert config.storage_dir is None
        assert config.block_critical_conflicts

    def test_from_env(self, monkeypatch):
        """SIGHTLINE_* variables override the defaults."""
        monkeypatch.setenv("SIGHTLINE_ENV", "production")
        monkeypatch.setenv("SIGHTLINE_GRID_SIZE", "50")
        monkeypatch.setenv("SIGHTLINE_MOVEMENT_THRESHOLD", "1")
        monkeypatch.setenv("SIGHTLINE_UPDATE_ON_LIGHTING", "no")
        monkeypatch.setenv("SIGHTLINE_BLOCK_CRITICAL", "false")
        monkeypatch.setenv("SIGHTLINE_STORAGE_DIR", "/tmp/sightline")

        config = EngineConfig.from_env()

        assert config.env == "production"
        assert config.min_movement == 50.0
        assert not config.update_on_lighting
        assert config.update_on_movement
        assert not config.block_critical_conflicts
        assert config.storage_dir == "/tmp/sightline"

    def test_empty_storage_dir_means_memory(self, monkeypatch):
        monkeypatch.setenv("SIGHTLINE_STORAGE_DIR", "")

        assert EngineConfig.from_env().storage_dir is None

    def test_storage_backend_follows_config(self, world, bus, tmp_path):
        in_memory = VisibilityService(world, bus=bus, config=EngineConfig())
        on_disk = VisibilityService(
            world, bus=bus, config=EngineConfig(storage_dir=str(tmp_path))
        )

        assert isinstance(in_memory.storage, InMemoryFlagStorage)
        assert isinstance(on_disk.storage, JsonFileFlagStorage)
