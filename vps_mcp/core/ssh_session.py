"""Paramiko-backed SSH session used by the connection pool.

Every blocking paramiko call runs in the default executor so the event loop
stays responsive while a host is slow to answer.
"""

import asyncio
import threading
import time
from typing import Protocol

import paramiko
import structlog
from paramiko import AutoAddPolicy, SSHClient
from paramiko.ssh_exception import AuthenticationException, SSHException

from ..models.connection import CommandResult
from ..models.host import VPSHost
from .exceptions import (
    AuthenticationError,
    CommandError,
    CommandTimeoutError,
    ConnectionTimeoutError,
    SSHConnectionError,
)

logger = structlog.get_logger()


class SSHSession(Protocol):
    """What the pool needs from a remote session."""

    async def connect(self) -> None: ...

    async def run(self, command: str, timeout: float) -> CommandResult: ...

    async def write_file(self, path: str, content: str, timeout: float) -> None: ...

    async def keepalive(self) -> None: ...

    def is_active(self) -> bool: ...

    async def close(self) -> None: ...


class ParamikoSession:
    """One authenticated SSH connection to a host."""

    def __init__(self, host: VPSHost, connect_timeout: float = 5.0):
        self.host = host
        self.connect_timeout = connect_timeout
        self._client: SSHClient | None = None

    def _connect_kwargs(self) -> dict:
        kwargs = {
            "hostname": self.host.address,
            "port": self.host.port,
            "username": self.host.username,
            "timeout": self.connect_timeout,
            "banner_timeout": self.connect_timeout,
            "auth_timeout": self.connect_timeout,
        }
        if self.host.private_key_path:
            kwargs["key_filename"] = self.host.private_key_path
            if self.host.passphrase:
                kwargs["passphrase"] = self.host.passphrase
        else:
            kwargs["password"] = self.host.password
            kwargs["allow_agent"] = False
            kwargs["look_for_keys"] = False
        return kwargs

    async def connect(self) -> None:
        client = SSHClient()
        client.set_missing_host_key_policy(AutoAddPolicy())
        abandoned = threading.Event()

        def _connect() -> None:
            client.connect(**self._connect_kwargs())
            if abandoned.is_set():
                client.close()

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, _connect)
        except asyncio.CancelledError:
            # The handshake thread outlives the cancelled await; close now and
            # again once it finishes connecting
            abandoned.set()
            loop.run_in_executor(None, client.close)
            raise
        except AuthenticationException as e:
            client.close()
            raise AuthenticationError(
                f"Authentication failed for {self.host.endpoint}: {e}"
            ) from e
        except TimeoutError as e:
            client.close()
            raise ConnectionTimeoutError(f"Timed out connecting to {self.host.endpoint}") from e
        except (SSHException, OSError) as e:
            client.close()
            raise SSHConnectionError(f"Failed to connect to {self.host.endpoint}: {e}") from e

        transport = client.get_transport()
        if transport:
            # Transport-level keepalive on top of the monitor's idle pings
            transport.set_keepalive(30)
        self._client = client
        logger.debug("SSH session opened", host_id=self.host.id, endpoint=self.host.endpoint)

    def _require_client(self) -> SSHClient:
        if self._client is None or not self.is_active():
            raise SSHConnectionError(f"SSH session to {self.host.endpoint} is not connected")
        return self._client

    async def run(self, command: str, timeout: float) -> CommandResult:
        """Execute ``command`` and collect its exit status and output."""
        client = self._require_client()
        channels: list[paramiko.Channel] = []

        def _execute() -> tuple[int, str, str]:
            _, stdout, stderr = client.exec_command(command, timeout=timeout)
            channels.append(stdout.channel)
            stdout_data = stdout.read().decode("utf-8", errors="ignore")
            stderr_data = stderr.read().decode("utf-8", errors="ignore")
            exit_status = stdout.channel.recv_exit_status()
            return exit_status, stdout_data, stderr_data

        loop = asyncio.get_running_loop()
        started = time.perf_counter()
        try:
            async with asyncio.timeout(timeout):
                exit_status, out, err = await loop.run_in_executor(None, _execute)
        except TimeoutError as e:
            for channel in channels:
                channel.close()
            raise CommandTimeoutError(
                f"Command timed out after {timeout:g}s", command=command
            ) from e
        except (SSHException, OSError, EOFError) as e:
            raise SSHConnectionError(f"Command channel to {self.host.endpoint} failed: {e}") from e

        return CommandResult(
            command=command,
            exit_status=exit_status,
            stdout=out,
            stderr=err,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )

    async def write_file(self, path: str, content: str, timeout: float) -> None:
        """Upload ``content`` to ``path`` over SFTP."""
        client = self._require_client()

        def _upload() -> None:
            sftp = client.open_sftp()
            try:
                # Bounds each SFTP read and write
                sftp.get_channel().settimeout(timeout)
                with sftp.file(path, "w") as remote_file:
                    remote_file.write(content.encode("utf-8"))
            finally:
                sftp.close()

        loop = asyncio.get_running_loop()
        try:
            async with asyncio.timeout(timeout):
                await loop.run_in_executor(None, _upload)
        except TimeoutError as e:
            raise CommandTimeoutError(
                f"Upload of {path} timed out after {timeout:g}s", command=f"sftp put {path}"
            ) from e
        except OSError as e:
            raise CommandError(f"Failed to write {path}: {e}", command=f"sftp put {path}") from e
        except SSHException as e:
            raise SSHConnectionError(f"SFTP to {self.host.endpoint} failed: {e}") from e

    async def keepalive(self) -> None:
        """Send an SSH ignore packet so idle NAT and server timeouts reset."""
        client = self._require_client()
        transport = client.get_transport()
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, transport.send_ignore)
        except (SSHException, OSError, EOFError) as e:
            raise SSHConnectionError(f"Keepalive to {self.host.endpoint} failed: {e}") from e

    def is_active(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return bool(transport and transport.is_active())

    async def close(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, client.close)
        except (SSHException, OSError) as e:
            logger.warning("Error closing SSH session", host_id=self.host.id, error=str(e))
