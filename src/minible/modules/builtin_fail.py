"""
Minible fail module
"""

from minible.modules.base import Module, ModuleResult, register_module


@register_module
class FailModule(Module):
    """Fail the task with a custom message."""

    name = "fail"
    needs_connection = False
    optional_args = {
        "msg": "Failed as requested from task",
    }

    async def run(self) -> ModuleResult:
        return ModuleResult(failed=True, msg=str(self.get_arg("msg")))
