"""
Minible Local Connection

Execute commands on the control node itself.
"""

import asyncio
import os
import shlex
import shutil
from pathlib import Path
from typing import Any, Dict, Optional

from minible.connections.base import Connection, RunResult


class LocalConnection(Connection):
    """
    Local connection - execute commands on the control node.

    Used for localhost and ``ansible_connection=local`` hosts.
    """

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[int] = None,
        cwd: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
    ) -> RunResult:
        env = os.environ.copy()
        if environment:
            env.update({k: str(v) for k, v in environment.items()})

        try:
            if shell:
                process = await asyncio.create_subprocess_shell(
                    command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=env,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *shlex.split(command),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=env,
                )
        except OSError as e:
            # Missing executable or bad cwd: rc 127 like a shell would give
            return RunResult(rc=127, stdout="", stderr=str(e))

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return RunResult(rc=124, stdout="", stderr="Command timed out")

        return RunResult(
            rc=process.returncode or 0,
            stdout=stdout_bytes.decode('utf-8', errors='replace'),
            stderr=stderr_bytes.decode('utf-8', errors='replace'),
        )

    async def put(self, local_path: Path, remote_path: str, mode: Optional[str] = None) -> None:
        dest = Path(remote_path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, dest)
        if mode:
            os.chmod(dest, int(str(mode), 8))

    async def stat(self, remote_path: str) -> Optional[Dict[str, Any]]:
        path = Path(remote_path)
        if not path.exists() and not path.is_symlink():
            return None

        st = path.lstat()
        return {
            'exists': True,
            'isdir': path.is_dir(),
            'isfile': path.is_file(),
            'islink': path.is_symlink(),
            'size': st.st_size,
            'mtime': st.st_mtime,
            'mode': oct(st.st_mode & 0o7777)[2:].zfill(4),
            'uid': st.st_uid,
            'gid': st.st_gid,
        }
