"""
Minible file module

Manage files, directories, symlinks and their attributes.
"""

import re
import shlex
from typing import Any, Dict, Optional, Tuple

from minible.modules.base import Module, ModuleResult, register_module


FILE_STATES = ("file", "directory", "absent", "touch", "link")
OCTAL_MODE = re.compile(r"^0?[0-7]{3,4}$")


def normalize_mode(mode: Any) -> Optional[str]:
    """
    Return a mode as a four digit octal string.

    YAML reads an unquoted 0644 as the integer 420, so integers are taken
    as already-converted octal values.

    Raises:
        ValueError: For symbolic or malformed modes
    """
    if mode is None:
        return None
    if isinstance(mode, int):
        return format(mode, "04o")
    text = str(mode).strip()
    if text.startswith("0o"):
        text = text[2:]
    if not OCTAL_MODE.match(text):
        raise ValueError(f"mode must be octal (e.g. '0644'), got {mode!r}")
    return text.zfill(4)[-4:]


class AttributeMixin:
    """Shared mode/owner/group handling for file-like modules."""

    async def apply_attributes(self, path: str, stat: Optional[Dict[str, Any]]) -> Tuple[bool, Optional[str]]:
        """
        Bring mode, owner and group of ``path`` in line with the task.

        Returns (changed, error message). Nothing is changed in check mode.
        """
        changed = False
        quoted = shlex.quote(path)

        mode = normalize_mode(self.get_arg("mode"))
        if mode and (stat is None or stat.get("mode") != mode):
            changed = True
            if not self.check_mode:
                result = await self.run_command(f"chmod {mode} {quoted}")
                if result.rc != 0:
                    return False, f"Failed to set mode on {path}: {result.stderr.strip()}"

        owner = self.get_arg("owner")
        group = self.get_arg("group")
        if owner or group:
            current_owner, current_group = None, None
            if stat is not None:
                result = await self.run_command(f"stat -c '%U %G' {quoted}", become=False)
                if result.rc == 0 and result.stdout.split():
                    current_owner, _, current_group = result.stdout.strip().partition(" ")
            wanted_owner = owner or current_owner
            wanted_group = group or current_group
            if (wanted_owner, wanted_group) != (current_owner, current_group):
                changed = True
                if not self.check_mode:
                    spec = f"{owner or ''}:{group or ''}" if group else str(owner)
                    result = await self.run_command(f"chown {shlex.quote(spec)} {quoted}")
                    if result.rc != 0:
                        return False, f"Failed to set ownership on {path}: {result.stderr.strip()}"

        return changed, None


@register_module
class FileModule(AttributeMixin, Module):
    """
    Manage files and directories.

    Supports:
    - Creating directories (state: directory)
    - Creating files or updating their timestamps (state: touch)
    - Deleting files/directories (state: absent)
    - Symbolic links (state: link)
    - Attributes of an existing file (state: file)
    - Mode, owner and group, changed only when they differ
    """

    name = "file"
    required_args = ["path"]
    optional_args = {
        "state": "file",
        "mode": None,
        "owner": None,
        "group": None,
        "force": False,
        "src": None,  # For symlinks
    }

    def validate_args(self) -> str | None:
        error = super().validate_args()
        if error:
            return error
        state = self.get_arg("state")
        if state not in FILE_STATES:
            return f"Unknown state: {state}. Supported: {', '.join(FILE_STATES)}"
        if state == "link" and not self.get_arg("src"):
            return "'src' is required when state=link"
        try:
            normalize_mode(self.get_arg("mode"))
        except ValueError as e:
            return str(e)
        return None

    async def run(self) -> ModuleResult:
        path = str(self.args["path"])
        state = self.get_arg("state", "file")
        stat = await self.connection.stat(path)

        if state == "absent":
            return await self._ensure_absent(path, stat)
        if state == "directory":
            return await self._ensure_directory(path, stat)
        if state == "touch":
            return await self._ensure_touch(path, stat)
        if state == "link":
            return await self._ensure_link(path, str(self.get_arg("src")), stat)
        return await self._ensure_file(path, stat)

    async def _ensure_absent(self, path: str, stat: Optional[Dict[str, Any]]) -> ModuleResult:
        if not stat:
            return ModuleResult(changed=False, msg=f"Path does not exist: {path}", results={"path": path, "state": "absent"})

        if not self.check_mode:
            result = await self.run_command(f"rm -rf {shlex.quote(path)}")
            if result.rc != 0:
                return ModuleResult(
                    failed=True,
                    rc=result.rc,
                    stderr=result.stderr,
                    msg=f"Failed to remove {path}: {result.stderr.strip()}",
                )

        return ModuleResult(changed=True, msg=f"Removed: {path}", results={"path": path, "state": "absent"})

    async def _ensure_directory(self, path: str, stat: Optional[Dict[str, Any]]) -> ModuleResult:
        results = {"path": path, "state": "directory"}
        created = False

        if stat:
            if not stat.get("isdir"):
                return ModuleResult(failed=True, msg=f"Path exists but is not a directory: {path}")
        else:
            created = True
            if not self.check_mode:
                result = await self.run_command(f"mkdir -p {shlex.quote(path)}")
                if result.rc != 0:
                    return ModuleResult(
                        failed=True,
                        rc=result.rc,
                        stderr=result.stderr,
                        msg=f"Failed to create directory {path}: {result.stderr.strip()}",
                    )
                stat = await self.connection.stat(path)

        attrs_changed, error = await self.apply_attributes(path, stat)
        if error:
            return ModuleResult(failed=True, msg=error, results=results)

        if created:
            return ModuleResult(changed=True, msg=f"Created directory: {path}", results=results)
        if attrs_changed:
            return ModuleResult(changed=True, msg=f"Updated attributes of {path}", results=results)
        return ModuleResult(changed=False, msg=f"Directory already exists: {path}", results=results)

    async def _ensure_touch(self, path: str, stat: Optional[Dict[str, Any]]) -> ModuleResult:
        results = {"path": path, "state": "touch"}
        if stat and stat.get("isdir"):
            return ModuleResult(failed=True, msg=f"Path is a directory, cannot touch: {path}")

        if not self.check_mode:
            result = await self.run_command(f"touch {shlex.quote(path)}")
            if result.rc != 0:
                return ModuleResult(
                    failed=True,
                    rc=result.rc,
                    stderr=result.stderr,
                    msg=f"Failed to touch {path}: {result.stderr.strip()}",
                )
            stat = await self.connection.stat(path)

        _, error = await self.apply_attributes(path, stat)
        if error:
            return ModuleResult(failed=True, msg=error, results=results)

        # touch always updates the timestamps
        return ModuleResult(changed=True, msg=f"Touched: {path}", results=results)

    async def _ensure_file(self, path: str, stat: Optional[Dict[str, Any]]) -> ModuleResult:
        results = {"path": path, "state": "file"}
        if not stat:
            return ModuleResult(failed=True, msg=f"file ({path}) is absent, cannot continue", results=results)
        if stat.get("isdir"):
            return ModuleResult(failed=True, msg=f"Path is a directory, not a file: {path}", results=results)

        changed, error = await self.apply_attributes(path, stat)
        if error:
            return ModuleResult(failed=True, msg=error, results=results)
        return ModuleResult(
            changed=changed,
            msg=f"Updated attributes of {path}" if changed else f"File exists: {path}",
            results=results,
        )

    async def _ensure_link(self, path: str, src: str, stat: Optional[Dict[str, Any]]) -> ModuleResult:
        results = {"path": path, "src": src, "state": "link"}
        quoted = shlex.quote(path)

        if stat:
            if stat.get("islink"):
                current = await self.run_command(f"readlink {quoted}", become=False)
                if current.rc == 0 and current.stdout.strip() == src:
                    return ModuleResult(changed=False, msg=f"Link already points to {src}", results=results)
            elif not self.get_arg("force"):
                return ModuleResult(
                    failed=True,
                    msg=f"{path} exists and is not a link; use force=yes to replace it",
                    results=results,
                )

        if not self.check_mode:
            cmd = f"ln -sfn {shlex.quote(src)} {quoted}"
            if stat and not stat.get("islink"):
                cmd = f"rm -rf {quoted} && {cmd}"
            result = await self.run_command(cmd)
            if result.rc != 0:
                return ModuleResult(
                    failed=True,
                    rc=result.rc,
                    stderr=result.stderr,
                    msg=f"Failed to create symlink: {result.stderr.strip()}",
                )

        return ModuleResult(changed=True, msg=f"Link {path} -> {src}", results=results)
