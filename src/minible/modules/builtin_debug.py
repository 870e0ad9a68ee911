"""
Minible debug module

Print messages and variable values during playbook execution.
"""

import json

from minible.engine.errors import TemplateError
from minible.engine.templating import render
from minible.modules.base import Module, ModuleResult, register_module


UNDEFINED_MESSAGE = "VARIABLE IS NOT DEFINED!"


@register_module
class DebugModule(Module):
    """
    Print debug messages.

    ``var`` takes an expression (``result.stdout``, ``groups['web']``) and
    shows its value; ``msg`` is printed as-is after templating.
    """

    name = "debug"
    needs_connection = False
    optional_args = {
        "msg": "Hello world!",
        "var": None,
    }

    def validate_args(self) -> str | None:
        if "msg" in self.args and "var" in self.args:
            return "'msg' and 'var' are mutually exclusive"
        return None

    async def run(self) -> ModuleResult:
        var = self.get_arg("var")

        if var:
            try:
                value = render("{{ " + str(var) + " }}", self.task_vars)
            except TemplateError:
                value = UNDEFINED_MESSAGE
            if isinstance(value, (dict, list)):
                output = f"{var}: {json.dumps(value, indent=2, default=str)}"
            else:
                output = f"{var}: {value}"
            return ModuleResult(msg=output, results={var: value})

        msg = self.get_arg("msg")
        output = msg if isinstance(msg, str) else json.dumps(msg, default=str)
        return ModuleResult(msg=output, results={"msg": msg})
