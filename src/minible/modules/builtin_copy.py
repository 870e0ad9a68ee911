"""
Minible copy module

Copy files or inline content to remote hosts.
"""

import hashlib
import json
import os
import shlex
import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from minible.modules.base import Module, ModuleResult, register_module
from minible.modules.builtin_file import AttributeMixin, normalize_mode


REMOTE_TMP_DIR = "/tmp"


@register_module
class CopyModule(AttributeMixin, Module):
    """
    Copy files from the control node to target hosts.

    Supports:
    - File copying (``src``), found next to the playbook or under its files/
    - Inline content (``content``)
    - Mode, owner and group
    - Idempotency via SHA-1 comparison with the destination
    """

    name = "copy"
    required_args = ["dest"]
    optional_args = {
        "src": None,
        "content": None,
        "mode": None,
        "owner": None,
        "group": None,
        "force": True,
    }

    def validate_args(self) -> str | None:
        error = super().validate_args()
        if error:
            return error
        has_src = self.args.get("src") is not None
        has_content = self.args.get("content") is not None
        if has_src == has_content:
            return "Exactly one of 'src' or 'content' is required"
        try:
            normalize_mode(self.get_arg("mode"))
        except ValueError as e:
            return str(e)
        return None

    async def run(self) -> ModuleResult:
        dest = str(self.args["dest"])
        content = self.get_arg("content")

        if content is not None:
            return await self._copy_bytes(_content_bytes(content), dest, src_label=None)

        src_path = self._resolve_src(str(self.args["src"]))
        if src_path is None:
            return ModuleResult(failed=True, msg=f"Could not find or access '{self.args['src']}'")
        if src_path.is_dir():
            return ModuleResult(failed=True, msg=f"Directory copy is not supported: {src_path}")

        if dest.endswith("/"):
            dest = dest + src_path.name
        else:
            dest_stat = await self.connection.stat(dest)
            if dest_stat and dest_stat.get("isdir"):
                dest = f"{dest.rstrip('/')}/{src_path.name}"

        return await self._copy_bytes(src_path.read_bytes(), dest, src_label=str(src_path))

    def _resolve_src(self, src: str) -> Optional[Path]:
        candidates = [Path(src)]
        playbook_dir = self.task_vars.get("playbook_dir")
        if playbook_dir and not os.path.isabs(src):
            candidates = [Path(playbook_dir) / "files" / src, Path(playbook_dir) / src] + candidates
        for candidate in candidates:
            if candidate.exists():
                return candidate
        return None

    async def _copy_bytes(self, data: bytes, dest: str, src_label: Optional[str]) -> ModuleResult:
        checksum = hashlib.sha1(data).hexdigest()
        results: Dict[str, Any] = {"dest": dest, "checksum": checksum, "size": len(data)}
        if src_label:
            results["src"] = src_label

        stat = await self.connection.stat(dest)
        if stat and stat.get("isdir"):
            return ModuleResult(failed=True, msg=f"Destination {dest} is a directory", results=results)

        if stat:
            remote_checksum = await self._remote_checksum(dest)
            if remote_checksum == checksum or not self.get_arg("force", True):
                attrs_changed, error = await self.apply_attributes(dest, stat)
                if error:
                    return ModuleResult(failed=True, msg=error, results=results)
                return ModuleResult(
                    changed=attrs_changed,
                    msg=f"Updated attributes of {dest}" if attrs_changed else f"{dest} already up to date",
                    results=results,
                )

        if self.check_mode:
            return ModuleResult(changed=True, msg=f"Would copy to {dest}", results=results)

        with tempfile.NamedTemporaryFile(delete=False, suffix=".tmp") as f:
            f.write(data)
            local_tmp = Path(f.name)
        try:
            error = await self._upload(local_tmp, dest)
        finally:
            local_tmp.unlink(missing_ok=True)
        if error:
            return ModuleResult(failed=True, msg=error, results=results)

        _, error = await self.apply_attributes(dest, None if self.get_arg("mode") else stat)
        if error:
            return ModuleResult(failed=True, msg=error, results=results)

        return ModuleResult(changed=True, msg=f"Copied to {dest}", results=results)

    async def _remote_checksum(self, dest: str) -> Optional[str]:
        result = await self.run_command(f"sha1sum {shlex.quote(dest)}")
        if result.rc != 0 or not result.stdout.split():
            return None
        return result.stdout.split()[0]

    async def _upload(self, local_path: Path, dest: str) -> Optional[str]:
        """Upload a file, going through a temporary path when become is on."""
        if not self.context.become.enabled:
            await self.connection.put(local_path, dest)
            return None

        remote_tmp = f"{REMOTE_TMP_DIR}/.minible-{uuid.uuid4().hex}"
        await self.connection.put(local_path, remote_tmp)
        result = await self.run_command(f"mv {shlex.quote(remote_tmp)} {shlex.quote(dest)}")
        if result.rc != 0:
            return f"Failed to move file into place at {dest}: {result.stderr.strip()}"
        return None


def _content_bytes(content: Any) -> bytes:
    if isinstance(content, bytes):
        return content
    if isinstance(content, (dict, list)):
        return json.dumps(content, indent=4).encode("utf-8")
    return str(content).encode("utf-8")
