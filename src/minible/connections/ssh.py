"""
Minible SSH Connection (asyncssh)

Remote command execution and SFTP uploads over a single asyncssh session.
"""

import asyncio
import logging
import shlex
import stat as stat_module
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Optional

import asyncssh

from minible.connections.base import Connection, RunResult
from minible.engine.errors import ConnectionError
from minible.engine.inventory import Host


logger = logging.getLogger(__name__)


class SSHConnection(Connection):
    """
    SSH connection using asyncssh.

    Supports:
    - Key-based authentication (ansible_ssh_private_key_file or the SSH agent)
    - Password authentication
    - Custom ports
    - Optional host key checking against known_hosts
    """

    def __init__(self, host: Host, connect_timeout: int = 30, host_key_checking: bool = True):
        super().__init__(host)
        self.connect_timeout = connect_timeout
        self.host_key_checking = host_key_checking
        self._conn: Optional[asyncssh.SSHClientConnection] = None
        self._sftp: Optional[asyncssh.SFTPClient] = None

    async def connect(self) -> None:
        params = self.host.connection_params

        connect_kwargs: Dict[str, Any] = {
            'host': params.address,
            'port': params.port,
            'connect_timeout': self.connect_timeout,
        }
        if params.user:
            connect_kwargs['username'] = params.user
        if params.private_key_file:
            connect_kwargs['client_keys'] = [params.private_key_file]
        if params.password:
            connect_kwargs['password'] = params.password
        if not self.host_key_checking:
            connect_kwargs['known_hosts'] = None

        try:
            self._conn = await asyncssh.connect(**connect_kwargs)
        except (OSError, asyncssh.Error, asyncio.TimeoutError) as e:
            raise ConnectionError(
                host=self.host.name,
                message=str(e) or e.__class__.__name__,
                connection_type='ssh',
                address=f"{params.address}:{params.port}",
            )
        logger.debug("SSH session to %s established", self.host.name)

    async def close(self) -> None:
        if self._sftp:
            self._sftp.exit()
            self._sftp = None

        if self._conn:
            self._conn.close()
            await self._conn.wait_closed()
            self._conn = None

    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[int] = None,
        cwd: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
    ) -> RunResult:
        if not self._conn:
            raise ConnectionError(host=self.host.name, message="not connected", connection_type='ssh')

        full_command = command
        if cwd:
            full_command = f"cd {shlex.quote(cwd)} && {full_command}"
        if shell or cwd:
            full_command = f"/bin/sh -c {shlex.quote(full_command)}"
        if environment:
            env_prefix = " ".join(f"{k}={shlex.quote(str(v))}" for k, v in environment.items())
            full_command = f"env {env_prefix} {full_command}"

        try:
            result = await asyncio.wait_for(self._conn.run(full_command, check=False), timeout=timeout)
        except asyncio.TimeoutError:
            return RunResult(rc=124, stdout="", stderr="Command timed out")
        except (OSError, asyncssh.Error) as e:
            # The session dropped: the host is unreachable from here on
            raise ConnectionError(host=self.host.name, message=str(e), connection_type='ssh')

        return RunResult(
            rc=result.exit_status if result.exit_status is not None else 255,
            stdout=_as_text(result.stdout),
            stderr=_as_text(result.stderr),
        )

    async def _get_sftp(self) -> asyncssh.SFTPClient:
        if self._sftp is None:
            if not self._conn:
                raise ConnectionError(host=self.host.name, message="not connected", connection_type='ssh')
            self._sftp = await self._conn.start_sftp_client()
        return self._sftp

    async def put(self, local_path: Path, remote_path: str, mode: Optional[str] = None) -> None:
        sftp = await self._get_sftp()

        remote_dir = str(PurePosixPath(remote_path).parent)
        await sftp.makedirs(remote_dir, exist_ok=True)
        await sftp.put(str(local_path), remote_path)

        if mode:
            await sftp.chmod(remote_path, int(str(mode), 8))

    async def stat(self, remote_path: str) -> Optional[Dict[str, Any]]:
        sftp = await self._get_sftp()

        try:
            attrs = await sftp.lstat(remote_path)
        except asyncssh.SFTPNoSuchFile:
            return None

        permissions = attrs.permissions or 0
        return {
            'exists': True,
            'isdir': stat_module.S_ISDIR(permissions),
            'isfile': stat_module.S_ISREG(permissions),
            'islink': stat_module.S_ISLNK(permissions),
            'size': attrs.size or 0,
            'mtime': attrs.mtime or 0,
            'mode': oct(permissions & 0o7777)[2:].zfill(4),
            'uid': attrs.uid or 0,
            'gid': attrs.gid or 0,
        }


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return str(value)
