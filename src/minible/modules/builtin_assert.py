"""
Minible assert module

Assert conditions during playbook execution.
"""

from typing import List

from minible.engine.errors import TemplateError
from minible.engine.templating import evaluate_when
from minible.modules.base import Module, ModuleResult, register_module


@register_module
class AssertModule(Module):
    """
    Assert conditions are true.

    Useful for validating state before proceeding with tasks.
    """

    name = "assert"
    needs_connection = False
    required_args = ["that"]
    optional_args = {
        "msg": None,
        "success_msg": None,
        "fail_msg": None,
        "quiet": False,
    }

    async def run(self) -> ModuleResult:
        that = self.args["that"]
        conditions: List[str] = [that] if isinstance(that, (str, bool)) else list(that)

        for condition in conditions:
            try:
                passed = evaluate_when(condition, self.task_vars)
            except TemplateError as e:
                return ModuleResult(
                    failed=True,
                    msg=f"Error evaluating assertion {condition!r}: {e}",
                    results={"assertion": condition, "evaluated_to": False},
                )
            if not passed:
                msg = self.get_arg("fail_msg") or self.get_arg("msg") or "Assertion failed"
                return ModuleResult(
                    failed=True,
                    msg=str(msg),
                    results={"assertion": condition, "evaluated_to": False},
                )

        success_msg = self.get_arg("success_msg") or "All assertions passed"
        return ModuleResult(
            changed=False,
            msg="" if self.get_arg("quiet") else str(success_msg),
        )
