"""
Minible Module Base

Base class and registry for all modules.
"""

import logging
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

from minible.connections.base import Connection, RunResult
from minible.engine.errors import ConnectionError, MinibleError, ModuleError
from minible.engine.playbook import Task
from minible.engine.results import TaskResult, TaskStatus
from minible.engine.scheduler import HostContext, ModuleRunner


logger = logging.getLogger(__name__)

BECOME_METHODS = ('sudo', 'su')


@dataclass
class ModuleResult:
    """Result of module execution."""

    changed: bool = False
    rc: int = 0
    stdout: str = ""
    stderr: str = ""
    msg: str = ""
    failed: bool = False
    skipped: bool = False
    results: Dict[str, Any] = field(default_factory=dict)

    def to_task_result(self, host: str, task_name: str) -> TaskResult:
        if self.skipped:
            status = TaskStatus.SKIPPED
        elif self.failed:
            status = TaskStatus.FAILED
        elif self.changed:
            status = TaskStatus.CHANGED
        else:
            status = TaskStatus.OK

        return TaskResult(
            host=host,
            task_name=task_name,
            status=status,
            changed=self.changed and not self.skipped,
            rc=self.rc,
            stdout=self.stdout,
            stderr=self.stderr,
            msg=self.msg,
            results=self.results,
        )


class Module(ABC):
    """
    Base class for all modules.

    A module inspects the host before acting and reports ``changed`` only
    when it altered state. In check mode it reports what it would change
    and leaves the host untouched.
    """

    # Module name (used for registration)
    name: str = ""

    # Required arguments
    required_args: List[str] = []

    # Optional arguments with defaults
    optional_args: Dict[str, Any] = {}

    # False for modules that run entirely on the control node
    needs_connection: bool = True

    def __init__(
        self,
        args: Dict[str, Any],
        context: HostContext,
        task_vars: Optional[Dict[str, Any]] = None,
    ):
        self.args = args
        self.context = context
        self.task_vars = task_vars if task_vars is not None else context.get_vars()

    @property
    def connection(self) -> Connection:
        if self.context.connection is None:
            raise ConnectionError(self.context.name, "no session open for module " + self.name)
        return self.context.connection

    @property
    def check_mode(self) -> bool:
        return self.context.check_mode

    def validate_args(self) -> Optional[str]:
        """
        Validate module arguments.

        Returns:
            Error message if validation fails, None otherwise
        """
        for required in self.required_args:
            if required not in self.args:
                return f"Missing required argument: {required}"
        return None

    def get_arg(self, name: str, default: Any = None) -> Any:
        if name in self.args:
            return self.args[name]
        if name in self.optional_args:
            return self.optional_args[name]
        return default

    def wrap_become(self, cmd: str, environment: Optional[Dict[str, str]] = None) -> str:
        """
        Wrap a shell command with privilege escalation if become is enabled.

        sudo and su reset the caller's environment, so ``environment`` is set
        inside the wrapper, for the escalated shell.
        """
        become = self.context.become
        if not become.enabled:
            return cmd

        inner = f"/bin/sh -c {shlex.quote(cmd)}"
        if environment:
            assignments = " ".join(f"{k}={shlex.quote(str(v))}" for k, v in environment.items())
            inner = f"env {assignments} {inner}"

        if become.method == "sudo":
            return f"sudo -n -u {shlex.quote(become.user)} {inner}"
        if become.method == "su":
            return f"su - {shlex.quote(become.user)} -c {shlex.quote(inner if environment else cmd)}"
        raise ModuleError(
            self.name,
            self.context.name,
            f"unsupported become_method {become.method!r} (supported: {', '.join(BECOME_METHODS)})",
        )

    async def run_command(
        self,
        cmd: str,
        cwd: Optional[str] = None,
        timeout: Optional[int] = None,
        become: bool = True,
    ) -> RunResult:
        """Run a shell command with the task's environment and become settings."""
        environment = self.context.environment or None
        if become and self.context.become.enabled:
            cmd = self.wrap_become(cmd, environment)
            environment = None
        return await self.connection.run(
            cmd,
            shell=True,
            cwd=cwd,
            timeout=timeout,
            environment=environment,
        )

    @abstractmethod
    async def run(self) -> ModuleResult:
        """Execute the module."""


# Module registry
_modules: Dict[str, Type[Module]] = {}
_modules_imported = False


def register_module(cls: Type[Module]) -> Type[Module]:
    """Decorator to register a module class."""
    _modules[cls.name] = cls
    return cls


def get_module(name: str) -> Optional[Type[Module]]:
    _ensure_modules_imported()
    return _modules.get(name)


def list_modules() -> List[str]:
    _ensure_modules_imported()
    return list(_modules.keys())


def _ensure_modules_imported() -> None:
    global _modules_imported
    if not _modules_imported:
        _modules_imported = True
        _import_builtin_modules()


def create_module_runner() -> ModuleRunner:
    """
    Create the module runner the scheduler calls for every (host, task).

    Opens the host's session on first use, then runs the module. Module
    errors become failed results; ConnectionError propagates so the
    scheduler can mark the host unreachable.
    """
    _ensure_modules_imported()

    async def runner(
        task: Task,
        ctx: HostContext,
        rendered_args: Dict[str, Any],
        task_vars: Dict[str, Any],
    ) -> TaskResult:
        module_class = get_module(task.module)
        if module_class is None:
            return TaskResult(
                host=ctx.name,
                task_name=task.name,
                status=TaskStatus.FAILED,
                msg=f"Unknown module: {task.module}",
            )

        module = module_class(rendered_args, ctx, task_vars)

        error = module.validate_args()
        if error:
            return TaskResult(
                host=ctx.name,
                task_name=task.name,
                status=TaskStatus.FAILED,
                msg=error,
            )

        if module.needs_connection:
            await ctx.ensure_connection()

        try:
            result = await module.run()
        except ConnectionError:
            raise
        except MinibleError as e:
            result = ModuleResult(failed=True, msg=str(e))
        except Exception as e:
            logger.debug("Module %s raised on %s", task.module, ctx.name, exc_info=True)
            result = ModuleResult(failed=True, msg=f"{e.__class__.__name__}: {e}")

        return result.to_task_result(ctx.name, task.name)

    return runner


def _import_builtin_modules() -> None:
    """Import all built-in modules to register them."""
    # These imports trigger the @register_module decorators
    from minible.modules import builtin_apt  # noqa: F401
    from minible.modules import builtin_assert  # noqa: F401
    from minible.modules import builtin_command  # noqa: F401
    from minible.modules import builtin_copy  # noqa: F401
    from minible.modules import builtin_debug  # noqa: F401
    from minible.modules import builtin_fail  # noqa: F401
    from minible.modules import builtin_file  # noqa: F401
    from minible.modules import builtin_package  # noqa: F401
    from minible.modules import builtin_ping  # noqa: F401
    from minible.modules import builtin_service  # noqa: F401
    from minible.modules import builtin_set_fact  # noqa: F401
    from minible.modules import builtin_setup  # noqa: F401
    from minible.modules import builtin_uri  # noqa: F401
