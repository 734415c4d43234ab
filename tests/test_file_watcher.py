"""Tests for configuration hot reload."""

import pytest

from vps_mcp.core.file_watcher import ConfigFileWatcher, HotReloadManager

HOSTS = """
hosts:
  web1:
    address: 203.0.113.10
    username: deploy
    password: s3cret
"""

MORE_HOSTS = HOSTS + """
  web9:
    address: 198.51.100.9
    username: ops
    private_key_path: /keys/id_ed25519
"""


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "hosts.yml"
    path.write_text(HOSTS)
    return path


@pytest.fixture
def manager(registry, config_file) -> HotReloadManager:
    manager = HotReloadManager(registry)
    manager.setup_hot_reload(str(config_file))
    return manager


class TestHotReload:
    async def test_changes_are_applied_to_registry(self, manager, registry, config_file):
        config_file.write_text(MORE_HOSTS)

        assert await manager.config_watcher.handle_config_change() is True

        assert [h.id for h in registry.list_hosts()] == ["web1", "web9"]
        assert registry.get("web9").auth_method == "key"

    async def test_unchanged_file_is_skipped(self, manager):
        watcher = manager.config_watcher
        assert await watcher.handle_config_change() is True
        assert await watcher.handle_config_change() is False

    async def test_broken_file_keeps_last_configuration(self, manager, registry, config_file):
        config_file.write_text("hosts:\n  web1: [broken\n")

        assert await manager.config_watcher.handle_config_change() is False

        assert len(registry) == 2

    async def test_start_and_stop(self, manager):
        await manager.start_hot_reload()
        assert manager.config_watcher.is_watching
        await manager.stop_hot_reload()
        assert not manager.config_watcher.is_watching


class TestConfigFileWatcher:
    async def test_missing_file_is_not_watched(self, tmp_path):
        async def callback(config):
            raise AssertionError("no reload expected")

        watcher = ConfigFileWatcher(str(tmp_path / "absent.yml"), callback)

        await watcher.start_watching()

        assert not watcher.is_watching

    async def test_hash_ignores_host_order(self, config_file):
        received = []

        async def callback(config):
            received.append(config)

        watcher = ConfigFileWatcher(str(config_file), callback)
        await watcher.handle_config_change()

        config = received[0]
        reordered = config.model_copy(update={"hosts": dict(reversed(config.hosts.items()))})
        assert watcher._calculate_config_hash(config) == watcher._calculate_config_hash(reordered)
