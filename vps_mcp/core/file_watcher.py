"""File watching and hot reload of the hosts configuration file."""

import asyncio
import hashlib
from collections.abc import Awaitable, Callable
from pathlib import Path

import structlog
from watchfiles import awatch

from .config_loader import VPSMCPConfig, load_config_async
from .exceptions import ConfigurationError
from .host_registry import HostRegistry

logger = structlog.get_logger()

RESTART_DELAY = 5.0


class ConfigFileWatcher:
    """Watches the configuration file for changes and triggers hot reload."""

    def __init__(
        self, config_path: str, reload_callback: Callable[[VPSMCPConfig], Awaitable[None]]
    ):
        self.config_path = Path(config_path)
        self.reload_callback = reload_callback
        self._watch_task: asyncio.Task | None = None
        self._is_watching = False
        self._last_config_hash: str | None = None

    @property
    def is_watching(self) -> bool:
        return self._is_watching

    async def start_watching(self) -> None:
        """Start watching the configuration file for changes."""
        if self._is_watching:
            logger.warning("File watcher is already running")
            return

        if not self.config_path.exists():
            logger.warning("Configuration file does not exist", path=str(self.config_path))
            return

        self._is_watching = True
        self._watch_task = asyncio.create_task(self._watch_files())
        logger.info("Started configuration file watcher", path=str(self.config_path))

    async def stop_watching(self) -> None:
        """Stop watching the configuration file."""
        if not self._is_watching:
            return

        self._is_watching = False
        if self._watch_task and not self._watch_task.done():
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass

        logger.info("Stopped configuration file watcher")

    async def _watch_files(self) -> None:
        """Watch for file changes and trigger reloads; restart after errors."""
        while self._is_watching:
            try:
                async for changes in awatch(str(self.config_path)):
                    if not self._is_watching:
                        break
                    logger.debug("File change detected", changes=len(changes))
                    await self.handle_config_change()
                return
            except asyncio.CancelledError:
                logger.debug("File watcher cancelled")
                raise
            except Exception as e:
                logger.error("File watcher error", error=str(e))
                await asyncio.sleep(RESTART_DELAY)
                if self._is_watching:
                    logger.info("Restarting file watcher after error")

    async def handle_config_change(self) -> bool:
        """Reload the file and apply it. Returns True when a reload was applied.

        Broken files are logged and ignored so the last good configuration stays
        in effect.
        """
        # Give editors a moment to finish writing
        await asyncio.sleep(0.1)
        logger.info("Reloading configuration", path=str(self.config_path))
        try:
            new_config = await load_config_async(str(self.config_path))
        except ConfigurationError as e:
            logger.error("Failed to reload configuration", error=str(e), path=str(self.config_path))
            return False

        config_hash = self._calculate_config_hash(new_config)
        if config_hash == self._last_config_hash:
            logger.debug("Configuration unchanged, skipping reload")
            return False

        await self.reload_callback(new_config)
        self._last_config_hash = config_hash
        logger.info("Configuration reloaded successfully", hosts=sorted(new_config.hosts))
        return True

    def _calculate_config_hash(self, config: VPSMCPConfig) -> str:
        """Digest of host identity and credentials for change detection."""
        host_data = [
            host.model_dump_json() for _, host in sorted(config.hosts.items())
        ]
        return hashlib.sha256("|".join(host_data).encode("utf-8")).hexdigest()


class HotReloadManager:
    """Keeps the host registry in sync with the configuration file."""

    def __init__(self, registry: HostRegistry):
        self.registry = registry
        self.config_watcher: ConfigFileWatcher | None = None

    def setup_hot_reload(self, config_path: str) -> None:
        self.config_watcher = ConfigFileWatcher(config_path, self._reload_hosts)

    async def start_hot_reload(self) -> None:
        if self.config_watcher:
            await self.config_watcher.start_watching()

    async def stop_hot_reload(self) -> None:
        if self.config_watcher:
            await self.config_watcher.stop_watching()

    async def _reload_hosts(self, new_config: VPSMCPConfig) -> None:
        """Apply host additions, removals and credential changes.

        Removed hosts have their connections evicted and their tasks
        cancelled through the registry's listeners.
        """
        logger.info("Applying hot configuration reload")
        changes = await self.registry.sync(new_config.hosts)
        for kind, host_ids in changes.items():
            if host_ids:
                logger.info(f"Hosts {kind} during hot reload", hosts=host_ids)
