"""
Minible command and shell modules

Execute commands on target hosts.
"""

import shlex
from typing import Optional

from minible.connections.base import RunResult
from minible.modules.base import Module, ModuleResult, register_module


@register_module
class CommandModule(Module):
    """
    Execute a command without shell processing.

    Shell operators and variables are not interpreted. ``creates`` and
    ``removes`` make the command idempotent: it is skipped when the path
    already exists (or is already gone). A command that runs reports changed.
    """

    name = "command"
    optional_args = {
        "cmd": None,
        "argv": None,
        "chdir": None,
        "creates": None,
        "removes": None,
    }

    def validate_args(self) -> str | None:
        given = [k for k in ("_raw_params", "cmd", "argv") if self.args.get(k)]
        if not given:
            return "Either a free-form command, 'cmd' or 'argv' is required"
        if len(given) > 1:
            return f"Only one of free-form command, 'cmd' or 'argv' may be given, got {given}"
        return None

    def build_command(self) -> str:
        argv = self.args.get("argv")
        if argv:
            return " ".join(shlex.quote(str(a)) for a in argv)
        cmd = str(self.args.get("_raw_params") or self.args.get("cmd"))
        # No shell: re-quote each word so operators reach the program literally
        return " ".join(shlex.quote(word) for word in shlex.split(cmd))

    async def run(self) -> ModuleResult:
        cmd = self.build_command()

        skip_reason = await self._check_creates_removes()
        if skip_reason:
            return ModuleResult(
                changed=False,
                msg=skip_reason,
                results={"cmd": cmd},
            )

        if self.check_mode:
            return ModuleResult(
                skipped=True,
                msg="Command would have run if not in check mode",
                results={"cmd": cmd},
            )

        result = await self.run_command(cmd, cwd=self.get_arg("chdir"))
        return self.command_result(cmd, result)

    async def _check_creates_removes(self) -> Optional[str]:
        creates = self.get_arg("creates")
        if creates:
            stat = await self.connection.stat(str(creates))
            if stat and stat.get("exists"):
                return f"Did not run command since '{creates}' exists"

        removes = self.get_arg("removes")
        if removes:
            stat = await self.connection.stat(str(removes))
            if not stat or not stat.get("exists"):
                return f"Did not run command since '{removes}' does not exist"

        return None

    @staticmethod
    def command_result(cmd: str, result: RunResult) -> ModuleResult:
        return ModuleResult(
            changed=True,
            rc=result.rc,
            stdout=result.stdout.rstrip("\n"),
            stderr=result.stderr.rstrip("\n"),
            failed=result.rc != 0,
            msg=f"non-zero return code: {result.rc}" if result.rc != 0 else "",
            results={"cmd": cmd},
        )


@register_module
class ShellModule(CommandModule):
    """Execute a command through /bin/sh, with pipes, redirects and variables."""

    name = "shell"

    def build_command(self) -> str:
        argv = self.args.get("argv")
        if argv:
            return " ".join(shlex.quote(str(a)) for a in argv)
        return str(self.args.get("_raw_params") or self.args.get("cmd"))
