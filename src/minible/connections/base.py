"""
Minible Connection Base Class

Abstract base class for transports, plus the per-run pool that opens one
session per host on first use.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from minible.engine.errors import ConnectionError
from minible.engine.inventory import Host


logger = logging.getLogger(__name__)

SUPPORTED_CONNECTIONS = ('local', 'ssh')

ConnectionFactory = Callable[[Host], Awaitable['Connection']]


@dataclass
class RunResult:
    """Result of running a command on a host."""

    rc: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.rc == 0


class Connection(ABC):
    """
    Abstract base class for connections.

    A connection that cannot be established or that drops mid-command raises
    ConnectionError; command failures are reported through RunResult.rc.
    """

    def __init__(self, host: Host):
        self.host = host

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""

    @abstractmethod
    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[int] = None,
        cwd: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
    ) -> RunResult:
        """
        Run a command on the host.

        Args:
            command: Command to execute
            shell: If True, run through /bin/sh
            timeout: Optional timeout in seconds (rc 124 on expiry)
            cwd: Working directory
            environment: Extra environment variables
        """

    @abstractmethod
    async def put(self, local_path: Path, remote_path: str, mode: Optional[str] = None) -> None:
        """Upload a local file, creating parent directories as needed."""

    @abstractmethod
    async def stat(self, remote_path: str) -> Optional[Dict[str, Any]]:
        """
        Get file/directory information.

        Returns:
            Dict with 'exists', 'isdir', 'isfile', 'islink', 'size', 'mode'
            or None if the path does not exist
        """

    @property
    def connection_type(self) -> str:
        return self.__class__.__name__.replace('Connection', '').lower()


def create_connection_factory(
    connect_timeout: int = 30,
    host_key_checking: bool = True,
) -> ConnectionFactory:
    """
    Create a factory that opens the right transport for a host.

    The transport is chosen from the host's ``ansible_connection``.
    """
    async def factory(host: Host) -> Connection:
        conn_type = host.connection_params.connection
        conn: Connection

        if conn_type == 'local':
            from minible.connections.local import LocalConnection
            conn = LocalConnection(host)
        elif conn_type == 'ssh':
            from minible.connections.ssh import SSHConnection
            conn = SSHConnection(
                host,
                connect_timeout=connect_timeout,
                host_key_checking=host_key_checking,
            )
        else:
            raise ConnectionError(
                host=host.name,
                message=f"unsupported connection type {conn_type!r}",
                connection_type=conn_type,
            )

        await conn.connect()
        return conn

    return factory


class ConnectionPool:
    """
    Lazily opened sessions, one per host for the whole run.

    Concurrent requests for the same host share a single connect attempt.
    A failed attempt is not cached, so a later play may try the host again.
    """

    def __init__(self, factory: ConnectionFactory):
        self.factory = factory
        self._connections: Dict[str, Connection] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def __contains__(self, host_name: str) -> bool:
        return host_name in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    async def get(self, host: Host) -> Connection:
        """
        Return the host's session, opening it on first use.

        Raises:
            ConnectionError: If the session cannot be opened
        """
        if host.name in self._connections:
            return self._connections[host.name]

        lock = self._locks.setdefault(host.name, asyncio.Lock())
        async with lock:
            if host.name in self._connections:
                return self._connections[host.name]

            params = host.connection_params
            logger.debug(
                "Opening %s session to %s (%s:%s, credential=%s)",
                params.connection, host.name, params.address, params.port,
                params.credential_ref,
            )
            try:
                conn = await self.factory(host)
            except ConnectionError:
                raise
            except (OSError, asyncio.TimeoutError) as e:
                raise ConnectionError(
                    host=host.name, message=str(e), connection_type=params.connection, address=params.address,
                )

            self._connections[host.name] = conn
            return conn

    async def close_all(self) -> None:
        """Close every open session."""
        connections = list(self._connections.items())
        self._connections.clear()
        for name, conn in connections:
            try:
                await conn.close()
            except (OSError, ConnectionError) as e:
                logger.warning("Error closing connection to %s: %s", name, e)
