"""Registry of managed hosts with change notification."""

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from ..models.host import VPSHost
from .exceptions import ConfigurationError, HostNotFoundError

logger = structlog.get_logger()

HostListener = Callable[[str], Awaitable[None]]
Persister = Callable[[dict[str, VPSHost]], Awaitable[None]]


class HostRegistry:
    """Holds host identity and credentials, keyed by host id.

    Listeners registered with :meth:`on_deleted` run when a host is removed;
    :meth:`on_credentials_changed` listeners run when a host's endpoint or
    credentials are replaced. The pool and the orchestrator subscribe to both
    so stale sessions are evicted and in-flight work is stopped.
    """

    def __init__(
        self,
        hosts: dict[str, VPSHost] | None = None,
        persister: Persister | None = None,
    ):
        self._hosts: dict[str, VPSHost] = dict(hosts or {})
        self._persister = persister
        self._deleted_listeners: list[HostListener] = []
        self._changed_listeners: list[HostListener] = []
        self._lock = asyncio.Lock()

    def get(self, host_id: str) -> VPSHost:
        try:
            return self._hosts[host_id]
        except KeyError:
            raise HostNotFoundError(f"Host '{host_id}' not found") from None

    def list_hosts(self) -> list[VPSHost]:
        return [self._hosts[host_id] for host_id in sorted(self._hosts)]

    def snapshot(self) -> dict[str, VPSHost]:
        return dict(self._hosts)

    def __contains__(self, host_id: object) -> bool:
        return host_id in self._hosts

    def __len__(self) -> int:
        return len(self._hosts)

    def on_deleted(self, listener: HostListener) -> None:
        self._deleted_listeners.append(listener)

    def on_credentials_changed(self, listener: HostListener) -> None:
        self._changed_listeners.append(listener)

    async def add(self, host: VPSHost) -> VPSHost:
        async with self._lock:
            if host.id in self._hosts:
                raise ConfigurationError(f"Host '{host.id}' already exists")
            await self._commit({**self._hosts, host.id: host})
        logger.info("Host added", host_id=host.id, endpoint=host.endpoint)
        return host

    async def update_credentials(
        self,
        host_id: str,
        password: str | None = None,
        private_key_path: str | None = None,
        passphrase: str | None = None,
    ) -> VPSHost:
        """Replace a host's credential; identity fields stay unchanged."""
        async with self._lock:
            updated = self.get(host_id).with_credentials(
                password=password, private_key_path=private_key_path, passphrase=passphrase
            )
            await self._commit({**self._hosts, host_id: updated})
        logger.info("Host credentials updated", host_id=host_id, auth_method=updated.auth_method)
        await self._notify(self._changed_listeners, host_id)
        return updated

    async def update_metadata(self, host_id: str, **changes) -> VPSHost:
        """Change name, description or tags."""
        async with self._lock:
            updated = self.get(host_id).with_metadata(**changes)
            await self._commit({**self._hosts, host_id: updated})
        logger.info("Host metadata updated", host_id=host_id, fields=sorted(changes))
        return updated

    async def remove(self, host_id: str) -> VPSHost:
        async with self._lock:
            host = self.get(host_id)
            remaining = dict(self._hosts)
            del remaining[host_id]
            await self._commit(remaining)
        logger.info("Host removed", host_id=host_id)
        await self._notify(self._deleted_listeners, host_id)
        return host

    async def sync(self, hosts: dict[str, VPSHost]) -> dict[str, list[str]]:
        """Make the registry match ``hosts`` (used by config hot reload).

        Removed hosts go through the deletion listeners; hosts whose endpoint
        or credentials differ are replaced and go through the change
        listeners. Nothing is written back to the configuration file.
        """
        async with self._lock:
            current = dict(self._hosts)
            added = sorted(set(hosts) - set(current))
            removed = sorted(set(current) - set(hosts))
            changed = sorted(
                host_id
                for host_id in set(current) & set(hosts)
                if current[host_id].identity_changed(hosts[host_id])
            )
            self._hosts = dict(hosts)

        for host_id in removed:
            await self._notify(self._deleted_listeners, host_id)
        for host_id in changed:
            await self._notify(self._changed_listeners, host_id)

        if added or removed or changed:
            logger.info("Host registry synchronized", added=added, removed=removed, changed=changed)
        return {"added": added, "removed": removed, "changed": changed}

    async def _commit(self, hosts: dict[str, VPSHost]) -> None:
        # Saved first; a failed save leaves the registry untouched
        if self._persister is not None:
            await self._persister(dict(hosts))
        self._hosts = hosts

    async def _notify(self, listeners: list[HostListener], host_id: str) -> None:
        for listener in listeners:
            await listener(host_id)
