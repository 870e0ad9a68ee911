"""
Minible ping module

Verifies the host is reachable and its Python interpreter runs.
"""

import shlex

from minible.modules.base import Module, ModuleResult, register_module


@register_module
class PingModule(Module):
    """
    Open the host's session and run its Python interpreter.

    Never changes anything. ``data: crash`` makes the module fail, for
    testing failure handling.
    """

    name = "ping"
    optional_args = {
        "data": "pong",
    }

    async def run(self) -> ModuleResult:
        data = self.get_arg("data", "pong")
        if data == "crash":
            return ModuleResult(failed=True, msg="boom")

        interpreter = self.context.host.connection_params.interpreter
        result = await self.run_command(
            f"{shlex.quote(interpreter)} -c {shlex.quote('print(1)')}",
            become=False,
        )
        if result.rc != 0:
            return ModuleResult(
                failed=True,
                rc=result.rc,
                stderr=result.stderr,
                msg=f"Python interpreter {interpreter} failed: {result.stderr.strip() or result.rc}",
            )

        return ModuleResult(
            changed=False,
            msg=str(data),
            results={"ping": data},
        )
