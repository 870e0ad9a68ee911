"""
Minible set_fact module

Set host variables for the rest of the run.
"""

from minible.modules.base import Module, ModuleResult, register_module


@register_module
class SetFactModule(Module):
    """
    Set host facts from a task.

    The facts are returned as ``ansible_facts``; the scheduler stores them on
    the host so later tasks, and later plays, see them.
    """

    name = "set_fact"
    needs_connection = False

    def validate_args(self) -> str | None:
        if not self.args:
            return "set_fact needs at least one key=value pair"
        for key in self.args:
            if not str(key).isidentifier():
                return f"Invalid variable name for set_fact: {key!r}"
        return None

    async def run(self) -> ModuleResult:
        facts = dict(self.args)
        return ModuleResult(
            changed=False,
            msg=f"Set {len(facts)} fact(s)",
            results={"ansible_facts": facts},
        )
