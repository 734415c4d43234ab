"""
Host Management Service

Business logic for registering, editing and testing managed hosts.
"""

import os
import re
import time
from collections import deque
from typing import Any

import structlog
from pydantic import ValidationError

from ..core.error_response import VPSMCPErrorResponse
from ..core.exceptions import VPSMCPError
from ..core.host_registry import HostRegistry
from ..core.ssh_pool import ConnectionHandle, ConnectionPool
from ..models.enums import HostAction
from ..models.host import VPSHost
from ..models.system import MonitoringSample, SystemInfo

SYSTEM_COMMANDS = {
    "os": "cat /etc/os-release",
    "kernel": "uname -r",
    "cpu": "grep -m1 'model name' /proc/cpuinfo",
    "cores": "nproc",
    "memory": "free -b",
    "disk": "df -B1 /",
    "uptime": "cat /proc/uptime",
    "load": "cat /proc/loadavg",
}

MONITOR_COMMANDS = {
    "cpu": "top -bn1 | head -5",
    "memory": "free -b",
    "disk": "df -B1 /",
    "network": "cat /proc/net/dev",
    "load": "cat /proc/loadavg",
}

# Samples kept per host for the monitor action
MONITORING_HISTORY = 100


def _to_int(value: str, default: int = 0) -> int:
    try:
        return int(value.strip())
    except ValueError:
        return default


def _to_float(value: str, default: float = 0.0) -> float:
    try:
        return float(value.strip())
    except ValueError:
        return default


class HostService:
    """Service for host management operations."""

    def __init__(self, registry: HostRegistry, pool: ConnectionPool):
        self.registry = registry
        self.pool = pool
        self.logger = structlog.get_logger()
        self._samples: dict[str, deque[MonitoringSample]] = {}

    async def list_hosts(self) -> dict[str, Any]:
        hosts = []
        for host in self.registry.list_hosts():
            data = host.public_dict()
            entry = self.pool.get_entry(host.id)
            data["connection"] = entry.to_dict() if entry else None
            hosts.append(data)
        return {"success": True, "hosts": hosts, "count": len(hosts)}

    async def add_host(
        self,
        host_id: str,
        address: str,
        username: str,
        port: int = 22,
        name: str | None = None,
        password: str | None = None,
        private_key_path: str | None = None,
        passphrase: str | None = None,
        description: str | None = None,
        tags: list[str] | None = None,
    ) -> dict[str, Any]:
        """Register a new host.

        Returns:
            Operation result with the public host view
        """
        try:
            host = VPSHost(
                id=host_id,
                name=name or "",
                address=address,
                port=port,
                username=username,
                password=password or None,
                private_key_path=os.path.expanduser(private_key_path) if private_key_path else None,
                passphrase=passphrase or None,
                description=description or "",
                tags=tags or [],
            )
        except ValidationError as e:
            return VPSMCPErrorResponse.create_error(
                error_message=f"Invalid host definition: {e.errors()[0]['msg']}",
                problem_type="validation-error",
                detail=str(e),
                context={"host_id": host_id},
            )

        await self.registry.add(host)
        return {
            "success": True,
            "message": f"Host '{host_id}' added",
            "host": host.public_dict(),
        }

    async def edit_host(
        self,
        host_id: str,
        name: str | None = None,
        password: str | None = None,
        private_key_path: str | None = None,
        passphrase: str | None = None,
        description: str | None = None,
        tags: list[str] | None = None,
        address: str | None = None,
        username: str | None = None,
        port: int | None = None,
    ) -> dict[str, Any]:
        """Change a host's credentials and descriptive fields.

        Address, port and username identify the host and cannot be edited;
        remove the host and add it again instead.
        """
        current = self.registry.get(host_id)
        immutable = {
            "address": (address, current.address),
            "username": (username, current.username),
            "port": (port, current.port),
        }
        changed = [field for field, (new, old) in immutable.items() if new and new != old]
        if changed:
            return VPSMCPErrorResponse.validation_error(
                changed[0],
                immutable[changed[0]][0],
                "identity fields cannot be edited; remove and re-add the host",
            )

        updated_fields: list[str] = []
        try:
            if password or private_key_path:
                await self.registry.update_credentials(
                    host_id,
                    password=password or None,
                    private_key_path=(
                        os.path.expanduser(private_key_path) if private_key_path else None
                    ),
                    passphrase=passphrase or None,
                )
                updated_fields.append("credentials")
            metadata = {
                k: v
                for k, v in {"name": name, "description": description, "tags": tags}.items()
                if v is not None
            }
            if metadata:
                await self.registry.update_metadata(host_id, **metadata)
                updated_fields.extend(sorted(metadata))
        except ValidationError as e:
            return VPSMCPErrorResponse.create_error(
                error_message=f"Invalid host update: {e.errors()[0]['msg']}",
                problem_type="validation-error",
                detail=str(e),
                context={"host_id": host_id},
            )

        if not updated_fields:
            return {"success": True, "message": "Nothing to update", "host_id": host_id}
        return {
            "success": True,
            "message": f"Host '{host_id}' updated",
            "updated_fields": updated_fields,
            "host": self.registry.get(host_id).public_dict(),
        }

    async def remove_host(self, host_id: str) -> dict[str, Any]:
        """Remove a host; its pooled connection is evicted and its tasks cancelled."""
        await self.registry.remove(host_id)
        self._samples.pop(host_id, None)
        return {"success": True, "message": f"Host '{host_id}' removed", "host_id": host_id}

    async def test_connection(self, host_id: str) -> dict[str, Any]:
        """Connect through the pool and run the liveness probe."""
        self.registry.get(host_id)
        started = time.perf_counter()
        async with self.pool.connection(host_id) as handle:
            result = await handle.run(
                self.pool.settings.probe_command, self.pool.settings.probe_timeout
            )
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        return {
            "success": result.ok,
            "host_id": host_id,
            "exit_status": result.exit_status,
            "output": result.stdout.strip(),
            "elapsed_ms": elapsed_ms,
            "metrics": self.pool.get_metrics(host_id).model_dump(),
        }

    async def system_info(self, host_id: str) -> dict[str, Any]:
        """Collect OS, CPU, memory, disk, uptime and load facts from the host."""
        self.registry.get(host_id)
        async with self.pool.connection(host_id) as handle:
            outputs = {
                name: await self._read(handle, cmd) for name, cmd in SYSTEM_COMMANDS.items()
            }

        memory = self._parse_memory(outputs["memory"])
        disk = self._parse_disk(outputs["disk"])
        info = SystemInfo(
            host_id=host_id,
            os_name=self._parse_os_release(outputs["os"]),
            kernel_version=outputs["kernel"].strip(),
            cpu_model=outputs["cpu"].partition(":")[2].strip(),
            cpu_cores=_to_int(outputs["cores"], default=1),
            memory_total=memory["total"],
            memory_available=memory["available"],
            disk_total=disk["total"],
            disk_available=disk["available"],
            uptime_seconds=_to_float((outputs["uptime"].split() or [""])[0]),
            load_average=self._parse_load(outputs["load"]),
        )
        self.logger.info("Collected system info", host_id=host_id, os_name=info.os_name)
        return {"success": True, "host_id": host_id, "system_info": info.model_dump(mode="json")}

    async def monitor(self, host_id: str) -> dict[str, Any]:
        """Take a resource usage sample and return it with the recent history."""
        self.registry.get(host_id)
        async with self.pool.connection(host_id) as handle:
            outputs = {
                name: await self._read(handle, cmd) for name, cmd in MONITOR_COMMANDS.items()
            }

        memory = self._parse_memory(outputs["memory"])
        disk = self._parse_disk(outputs["disk"])
        received, sent = self._parse_network(outputs["network"])
        sample = MonitoringSample(
            host_id=host_id,
            cpu_usage=self._parse_cpu_usage(outputs["cpu"]),
            memory_usage=(
                round(memory["used"] / memory["total"] * 100, 2) if memory["total"] else 0.0
            ),
            disk_usage=disk["percent"],
            network_in=received,
            network_out=sent,
            load_average=self._parse_load(outputs["load"]),
        )
        history = self._samples.setdefault(host_id, deque(maxlen=MONITORING_HISTORY))
        history.append(sample)
        return {
            "success": True,
            "host_id": host_id,
            "sample": sample.model_dump(mode="json"),
            "history": [s.model_dump(mode="json") for s in history],
        }

    async def _read(self, handle: ConnectionHandle, command: str) -> str:
        """Run a read-only command; a failing command contributes no output."""
        result = await handle.run(command)
        if not result.ok:
            self.logger.debug(
                "System command failed",
                host_id=handle.host_id,
                command=command,
                exit_status=result.exit_status,
            )
            return ""
        return result.stdout

    def _parse_os_release(self, output: str) -> str:
        fields = {}
        for line in output.splitlines():
            key, sep, value = line.partition("=")
            if sep:
                fields[key.strip()] = value.strip().strip("\"'")
        return fields.get("PRETTY_NAME") or fields.get("NAME", "")

    def _parse_memory(self, output: str) -> dict[str, int]:
        """Parse ``free -b``; older procps has no available column."""
        memory = {"total": 0, "used": 0, "available": 0}
        for line in output.splitlines():
            if not line.startswith("Mem:"):
                continue
            values = [_to_int(part) for part in line.split()[1:]]
            if len(values) >= 3:
                memory["total"], memory["used"] = values[0], values[1]
                memory["available"] = values[5] if len(values) >= 6 else values[2]
            break
        return memory

    def _parse_disk(self, output: str) -> dict[str, Any]:
        """Parse the root filesystem line of ``df -B1 /``."""
        disk: dict[str, Any] = {"total": 0, "available": 0, "percent": 0.0}
        lines = [line for line in output.splitlines() if line.strip()]
        if len(lines) < 2:
            return disk
        parts = lines[-1].split()
        if len(parts) >= 5:
            disk["total"] = _to_int(parts[1])
            disk["available"] = _to_int(parts[3])
            disk["percent"] = _to_float(parts[4].rstrip("%"))
        return disk

    def _parse_cpu_usage(self, output: str) -> float:
        # "%Cpu(s):  2.3 us,  0.8 sy, ... 96.5 id" or "Cpu(s):  2.3%us, ... 96.5%id"
        for line in output.splitlines():
            if "Cpu(s)" in line:
                match = re.search(r"([\d.]+)\s*%?\s*id\b", line)
                if match:
                    return round(100.0 - _to_float(match.group(1)), 2)
        return 0.0

    def _parse_network(self, output: str) -> tuple[int, int]:
        """Sum received and sent bytes over every interface except loopback."""
        received = sent = 0
        for line in output.splitlines():
            name, sep, counters = line.partition(":")
            if not sep or name.strip() in ("lo", "") or "|" in line:
                continue
            values = counters.split()
            if len(values) >= 9:
                received += _to_int(values[0])
                sent += _to_int(values[8])
        return received, sent

    def _parse_load(self, output: str) -> list[float]:
        return [_to_float(part) for part in output.split()[:3]]
    async def handle_action(self, action, **params) -> dict[str, Any]:
        """Unified action handler for all host operations."""
        if isinstance(action, str):
            try:
                action = HostAction(action.lower().strip())
            except ValueError:
                return {
                    "success": False,
                    "error": f"Unknown action: {action}",
                    "valid_actions": [a.value for a in HostAction],
                }

        handler = self._get_action_handlers().get(action)
        if handler is None:
            return {
                "success": False,
                "error": f"Unknown action: {action}",
                "valid_actions": [a.value for a in HostAction],
            }

        host_id = params.get("host_id") or None
        try:
            return await handler(**params)
        except VPSMCPError as e:
            self.logger.warning(
                "host action failed", action=action.value, host_id=host_id, error=str(e)
            )
            return VPSMCPErrorResponse.from_exception(
                e, instance=f"/hosts/{host_id}" if host_id else None, context={"host_id": host_id}
            )

    def _get_action_handlers(self) -> dict:
        """Get mapping of actions to handler methods."""
        return {
            HostAction.LIST: self._handle_list_action,
            HostAction.ADD: self._handle_add_action,
            HostAction.EDIT: self._handle_edit_action,
            HostAction.REMOVE: self._handle_remove_action,
            HostAction.TEST_CONNECTION: self._handle_test_connection_action,
            HostAction.SYSTEM_INFO: self._handle_system_info_action,
            HostAction.MONITOR: self._handle_monitor_action,
        }

    async def _handle_list_action(self, **params) -> dict[str, Any]:
        return await self.list_hosts()

    async def _handle_add_action(self, **params) -> dict[str, Any]:
        host_id = params.get("host_id", "")
        for required in ("address", "username"):
            if not params.get(required):
                return VPSMCPErrorResponse.validation_error(
                    required, "", f"{required} is required for add action"
                )
        return await self.add_host(
            host_id,
            params["address"],
            params["username"],
            port=params.get("port", 22),
            name=params.get("name"),
            password=params.get("password"),
            private_key_path=params.get("private_key_path"),
            passphrase=params.get("passphrase"),
            description=params.get("description"),
            tags=params.get("tags"),
        )

    async def _handle_edit_action(self, **params) -> dict[str, Any]:
        port = params.get("port")
        return await self.edit_host(
            params.get("host_id", ""),
            name=params.get("name"),
            password=params.get("password"),
            private_key_path=params.get("private_key_path"),
            passphrase=params.get("passphrase"),
            description=params.get("description"),
            tags=params.get("tags"),
            address=params.get("address") or None,
            username=params.get("username") or None,
            # The tool schema defaults port to 22; only a non-default value is an edit
            port=port if port not in (None, 22) else None,
        )

    async def _handle_remove_action(self, **params) -> dict[str, Any]:
        return await self.remove_host(params.get("host_id", ""))

    async def _handle_test_connection_action(self, **params) -> dict[str, Any]:
        return await self.test_connection(params.get("host_id", ""))

    async def _handle_system_info_action(self, **params) -> dict[str, Any]:
        return await self.system_info(params.get("host_id", ""))

    async def _handle_monitor_action(self, **params) -> dict[str, Any]:
        return await self.monitor(params.get("host_id", ""))
