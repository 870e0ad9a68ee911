"""
Shared fixtures: an in-memory connection and transport for driving modules
and the scheduler without real hosts.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from minible.connections.base import Connection, RunResult
from minible.engine.errors import ConnectionError
from minible.engine.inventory import Host
from minible.engine.scheduler import HostContext


class FakeConnection(Connection):
    """
    Connection that records commands and answers from a script.

    ``respond(fragment, *results)`` makes every command containing
    ``fragment`` return the given results in turn, the last one repeating.
    Unscripted commands succeed with empty output.
    """

    def __init__(self, host: Host, files: Optional[Dict[str, Dict[str, Any]]] = None):
        super().__init__(host)
        self.files: Dict[str, Dict[str, Any]] = dict(files or {})
        self.commands: List[str] = []
        self.cwds: List[Optional[str]] = []
        self.environments: List[Optional[Dict[str, str]]] = []
        self.uploads: List[Tuple[bytes, str, Optional[str]]] = []
        self.connected = False
        self.closed = False
        self._responses: List[Tuple[str, List[RunResult]]] = []

    def respond(self, fragment: str, *results: RunResult) -> 'FakeConnection':
        self._responses.append((fragment, list(results) or [RunResult(0, "", "")]))
        return self

    def ran(self, fragment: str) -> bool:
        return any(fragment in cmd for cmd in self.commands)

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.closed = True

    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[int] = None,
        cwd: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
    ) -> RunResult:
        self.commands.append(command)
        self.cwds.append(cwd)
        self.environments.append(environment)
        for fragment, results in self._responses:
            if fragment in command:
                return results.pop(0) if len(results) > 1 else results[0]
        return RunResult(rc=0, stdout="", stderr="")

    async def put(self, local_path: Path, remote_path: str, mode: Optional[str] = None) -> None:
        self.uploads.append((Path(local_path).read_bytes(), remote_path, mode))

    async def stat(self, remote_path: str) -> Optional[Dict[str, Any]]:
        return self.files.get(remote_path)


class FakeTransport:
    """Connection factory handing out FakeConnections, with unreachable hosts."""

    def __init__(self):
        self.connections: Dict[str, FakeConnection] = {}
        self.unreachable: Set[str] = set()
        self.opened: List[str] = []
        self._scripts: Dict[str, List[Tuple[str, Tuple[RunResult, ...]]]] = {}

    def script(self, host_name: str, fragment: str, *results: RunResult) -> None:
        self._scripts.setdefault(host_name, []).append((fragment, results))

    async def factory(self, host: Host) -> Connection:
        self.opened.append(host.name)
        if host.name in self.unreachable:
            raise ConnectionError(host.name, "Connection refused", "ssh")
        conn = FakeConnection(host)
        for fragment, results in self._scripts.get(host.name, []):
            conn.respond(fragment, *results)
        await conn.connect()
        self.connections[host.name] = conn
        return conn


def file_stat(isdir: bool = False, islink: bool = False, mode: str = "0644") -> Dict[str, Any]:
    """A stat() answer for an existing path."""
    return {
        'exists': True,
        'isdir': isdir,
        'isfile': not isdir and not islink,
        'islink': islink,
        'size': 0,
        'mode': mode,
    }


@pytest.fixture
def host() -> Host:
    return Host(name="web1", variables={"ansible_host": "10.0.0.11"})


@pytest.fixture
def connection(host: Host) -> FakeConnection:
    return FakeConnection(host)


@pytest.fixture
def context(host: Host, connection: FakeConnection) -> HostContext:
    """A host context with an open fake session."""
    ctx = HostContext(host=host, host_vars=host.get_vars())
    ctx.connection = connection
    return ctx


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
