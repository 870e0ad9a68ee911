"""
Minible Scheduler

Linear strategy: each task of a plan runs on every active host concurrently,
bounded by ``forks``, before the next task starts. A host that fails or
becomes unreachable leaves the play; the others carry on.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from minible.engine.display import Display
from minible.engine.errors import ConnectionError, HostFailedError, MinibleError, TemplateError
from minible.engine.inventory import Host
from minible.engine.plan import ExecutionPlan
from minible.engine.playbook import Play, Task
from minible.engine.results import PlayResult, TaskResult, TaskStatus
from minible.engine.templating import evaluate_when, render_recursive

if TYPE_CHECKING:
    from minible.connections.base import Connection, ConnectionPool


logger = logging.getLogger(__name__)

ModuleRunner = Callable[[Task, 'HostContext', Dict[str, Any], Dict[str, Any]], Awaitable[TaskResult]]

GATHER_FACTS_TASK = "Gathering Facts"


@dataclass(frozen=True)
class BecomeSettings:
    """Privilege escalation in effect for one task."""

    enabled: bool = False
    user: str = "root"
    method: str = "sudo"


@dataclass
class HostContext:
    """Runtime state of one host while a play runs on it."""

    host: Host
    host_vars: Dict[str, Any] = field(default_factory=dict)
    play_vars: Dict[str, Any] = field(default_factory=dict)
    extra_vars: Dict[str, Any] = field(default_factory=dict)
    # Shared with later plays of the same run
    facts: Dict[str, Any] = field(default_factory=dict)
    registered: Dict[str, Any] = field(default_factory=dict)
    pool: Optional['ConnectionPool'] = None
    connection: Optional['Connection'] = None
    check_mode: bool = False
    play_become: BecomeSettings = field(default_factory=BecomeSettings)
    become: BecomeSettings = field(default_factory=BecomeSettings)
    play_environment: Dict[str, Any] = field(default_factory=dict)
    environment: Dict[str, str] = field(default_factory=dict)
    failed: bool = False
    unreachable: bool = False
    notified: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.host.name

    @property
    def active(self) -> bool:
        return not self.failed and not self.unreachable

    def get_vars(self, task_vars: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Variables visible to a task, lowest precedence first: inventory,
        play, task, facts and registered results, extra vars.
        """
        merged: Dict[str, Any] = {}
        merged.update(self.host_vars)
        merged.update(self.play_vars)
        if task_vars:
            merged.update(task_vars)
        merged.update(self.facts)
        merged.update(self.registered)
        merged.update(self.extra_vars)
        merged['ansible_check_mode'] = self.check_mode
        return merged

    def become_for(self, task: Task) -> BecomeSettings:
        """The play's become settings with the task's overrides applied."""
        return BecomeSettings(
            enabled=self.play_become.enabled if task.become is None else bool(task.become),
            user=task.become_user or self.play_become.user,
            method=task.become_method or self.play_become.method,
        )

    async def ensure_connection(self) -> 'Connection':
        """
        The host's session, opened on first use.

        Raises:
            ConnectionError: If no session can be opened
        """
        if self.connection is None:
            if self.pool is None:
                raise ConnectionError(self.name, "no connection factory configured")
            self.connection = await self.pool.get(self.host)
        return self.connection

    def register(self, name: str, result: TaskResult) -> None:
        self.registered[name] = result.to_registered()

    def add_facts(self, facts: Dict[str, Any]) -> None:
        """Store facts as host variables; ansible_* ones also under ansible_facts."""
        self.facts.update(facts)
        gathered = {k[len('ansible_'):]: v for k, v in facts.items() if k.startswith('ansible_')}
        if gathered:
            self.facts.setdefault('ansible_facts', {}).update(gathered)

    def notify(self, names: List[str]) -> None:
        for name in names:
            if name not in self.notified:
                self.notified.append(name)

    def is_notified(self, handler: Task) -> bool:
        return handler.name in self.notified or any(topic in self.notified for topic in handler.listen)


class Scheduler:
    """
    Async scheduler for plan execution.

    Uses asyncio with a semaphore to limit concurrency (like Ansible's forks).
    Facts and registered variables persist per host across the plays of one
    scheduler's run.
    """

    def __init__(
        self,
        module_runner: ModuleRunner,
        forks: int = 5,
        pool: Optional['ConnectionPool'] = None,
        display: Optional[Display] = None,
        check_mode: bool = False,
        extra_vars: Optional[Dict[str, Any]] = None,
        magic_vars: Optional[Dict[str, Any]] = None,
    ):
        """
        Args:
            module_runner: Async callable (task, ctx, args, task_vars) -> TaskResult
            forks: Maximum number of hosts running a task at once
            pool: Session pool; sessions open on the first task needing one
            display: Console output; a quiet one is used when omitted
            check_mode: Ask modules to report changes without making them
            extra_vars: Highest-precedence variables
            magic_vars: Run-level variables such as playbook_dir
        """
        self.module_runner = module_runner
        self.forks = max(1, forks)
        self.pool = pool
        self.display = display or Display(quiet=True)
        self.check_mode = check_mode
        self.extra_vars = dict(extra_vars or {})
        self.magic_vars = dict(magic_vars or {})
        self._facts: Dict[str, Dict[str, Any]] = {}
        self._registered: Dict[str, Dict[str, Any]] = {}

    async def run_play(
        self,
        plan: ExecutionPlan,
        hosts: List[Host],
        host_vars: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> PlayResult:
        """
        Run a compiled play on the given hosts.

        Args:
            plan: The play's execution plan
            hosts: Target hosts, in inventory order
            host_vars: Resolved inventory variables per host name
        """
        play = plan.play
        self.display.play(play.name)

        play_result = PlayResult(play_name=play.name, hosts=[h.name for h in hosts])
        if not hosts:
            self.display.warning(f"No hosts matched for play: {play.hosts}")
            return play_result

        contexts = [self._create_context(play, host, host_vars) for host in hosts]

        try:
            if play.gather_facts:
                gather = Task(name=GATHER_FACTS_TASK, module="setup", args={})
                self._record(play_result, await self.run_task(gather, contexts))
                self._check_fatal(play, gather, contexts)

            for step in plan.steps:
                if not any(ctx.active for ctx in contexts):
                    self.display.banner("NO MORE HOSTS LEFT")
                    break
                results = await self.run_task(step.task, contexts)
                self._record(play_result, results)
                self._warn_unknown_notifications(plan, step.task, results)
                self._check_fatal(play, step.task, contexts)

            await self._run_handlers(plan, contexts, play_result)
        except HostFailedError as e:
            logger.info("Play %r aborted: %s", play.name, e)
            self.display.error(f"any_errors_fatal: {e}")
            play_result.aborted = True

        return play_result

    async def run_task(
        self,
        task: Task,
        contexts: List[HostContext],
        handler: bool = False,
    ) -> List[TaskResult]:
        """
        Run one task on every active host, at most ``forks`` at a time.

        Returns one result per active host, in host order.
        """
        active = [ctx for ctx in contexts if ctx.active]
        if not active:
            return []

        self.display.task(task.name, handler=handler)
        semaphore = asyncio.Semaphore(self.forks)

        async def run_on_host(ctx: HostContext) -> TaskResult:
            async with semaphore:
                return await self._execute_task_on_host(task, ctx)

        outcomes = await asyncio.gather(*(run_on_host(ctx) for ctx in active), return_exceptions=True)

        results: List[TaskResult] = []
        for ctx, outcome in zip(active, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error("Unexpected error running %r on %s", task.name, ctx.name, exc_info=outcome)
                outcome = self._failed(ctx, task, f"Unexpected error: {outcome}")

            if outcome.status == TaskStatus.UNREACHABLE:
                ctx.unreachable = True
            elif outcome.counts_as_failure:
                ctx.failed = True

            self.display.host_result(outcome, show_msg=task.module == 'debug')
            results.append(outcome)

        return results

    async def _execute_task_on_host(self, task: Task, ctx: HostContext) -> TaskResult:
        """Run a task on one host: conditional, loop, retries, then bookkeeping."""
        ctx.become = ctx.become_for(task)

        if task.loop is not None:
            result = await self._execute_loop(task, ctx)
        else:
            task_vars = ctx.get_vars(task.vars)
            try:
                run = evaluate_when(task.when, task_vars)
            except TemplateError as e:
                return self._failed(ctx, task, f"Error evaluating 'when': {e}")

            if not run:
                result = self._skipped(ctx, task, "Conditional result was False")
            else:
                result = await self._run_with_retries(task, ctx, task_vars)
                self._apply_facts(ctx, result)

        if result.failed and task.ignore_errors and result.status != TaskStatus.UNREACHABLE:
            result.ignored = True

        if task.register:
            ctx.register(task.register, result)

        if result.changed and not result.failed and task.notify:
            ctx.notify(task.notify)

        return result

    async def _execute_loop(self, task: Task, ctx: HostContext) -> TaskResult:
        try:
            items = render_recursive(task.loop, ctx.get_vars(task.vars))
        except TemplateError as e:
            return self._failed(ctx, task, f"Error rendering loop: {e}")

        if not isinstance(items, list):
            return self._failed(ctx, task, f"Invalid data passed to 'loop', it requires a list, got {type(items).__name__}")
        if not items:
            return self._skipped(ctx, task, "No items in the list")

        item_results: List[TaskResult] = []
        for item in items:
            # Re-read variables each pass: set_fact may have changed them
            item_vars = ctx.get_vars(task.vars)
            item_vars[task.loop_var] = item

            try:
                run = evaluate_when(task.when, item_vars)
            except TemplateError as e:
                item_result = self._failed(ctx, task, f"Error evaluating 'when': {e}")
            else:
                if run:
                    item_result = await self._run_with_retries(task, ctx, item_vars)
                    self._apply_facts(ctx, item_result)
                else:
                    item_result = self._skipped(ctx, task, "Conditional result was False")

            item_result.results.setdefault('item', item)
            item_result.results.setdefault(task.loop_var, item)
            item_results.append(item_result)

            if item_result.status == TaskStatus.UNREACHABLE:
                break

        return self._combine_loop(task, ctx, item_results)

    def _combine_loop(self, task: Task, ctx: HostContext, item_results: List[TaskResult]) -> TaskResult:
        changed = any(r.changed for r in item_results)
        if any(r.status == TaskStatus.UNREACHABLE for r in item_results):
            status = TaskStatus.UNREACHABLE
            msg = next(r.msg for r in item_results if r.status == TaskStatus.UNREACHABLE)
        elif any(r.failed for r in item_results):
            status = TaskStatus.FAILED
            msg = "One or more items failed"
        elif all(r.status == TaskStatus.SKIPPED for r in item_results):
            status = TaskStatus.SKIPPED
            msg = "All items skipped"
        else:
            status = TaskStatus.CHANGED if changed else TaskStatus.OK
            msg = "All items completed"

        return TaskResult(
            host=ctx.name,
            task_name=task.name,
            status=status,
            changed=changed,
            msg=msg,
            attempts=max(r.attempts for r in item_results),
            loop_results=item_results,
        )

    async def _run_with_retries(self, task: Task, ctx: HostContext, variables: Dict[str, Any]) -> TaskResult:
        """
        Apply the task's retry policy.

        With ``until`` the task is retried until the expression holds; without
        it, while the task fails. Unreachable hosts are never retried.
        """
        policy = task.retry
        if policy is None:
            return await self._run_once(task, ctx, variables)

        result = None
        for attempt in range(1, policy.attempts + 1):
            result = await self._run_once(task, ctx, variables)
            result.attempts = attempt

            if result.status in (TaskStatus.UNREACHABLE, TaskStatus.SKIPPED):
                return result

            if policy.until is not None:
                try:
                    done = evaluate_when(policy.until, self._with_registered(task, variables, result))
                except TemplateError as e:
                    return self._fail_result(result, f"Error evaluating 'until': {e}")
            else:
                done = not result.failed

            if done:
                return result

            if attempt < policy.attempts:
                self.display.retrying(ctx.name, task.name, policy.attempts - attempt)
                logger.debug("Retrying %r on %s in %ss", task.name, ctx.name, policy.delay)
                await asyncio.sleep(policy.delay)

        if not result.failed:
            self._fail_result(result, f"Retried {policy.retries} times; 'until' condition never met")
        return result

    async def _run_once(self, task: Task, ctx: HostContext, variables: Dict[str, Any]) -> TaskResult:
        """One module invocation plus changed_when / failed_when."""
        try:
            args = render_recursive(task.args, variables)
            environment = render_recursive({**ctx.play_environment, **task.environment}, variables)
        except TemplateError as e:
            return self._failed(ctx, task, f"Error rendering task arguments: {e}")

        ctx.environment = {str(k): str(v) for k, v in environment.items()}

        try:
            result = await self.module_runner(task, ctx, args, variables)
        except ConnectionError as e:
            logger.info("%s unreachable: %s", ctx.name, e)
            return TaskResult(
                host=ctx.name,
                task_name=task.name,
                status=TaskStatus.UNREACHABLE,
                msg=str(e),
            )
        except MinibleError as e:
            return self._failed(ctx, task, str(e))

        if result.status in (TaskStatus.SKIPPED, TaskStatus.UNREACHABLE):
            return result

        if task.changed_when is not None or task.failed_when is not None:
            eval_vars = self._with_registered(task, variables, result)

            if task.changed_when is not None:
                try:
                    result.changed = evaluate_when(task.changed_when, eval_vars)
                except TemplateError as e:
                    return self._fail_result(result, f"Error evaluating 'changed_when': {e}")
                if not result.failed:
                    result.status = TaskStatus.CHANGED if result.changed else TaskStatus.OK

            if task.failed_when is not None:
                try:
                    failed = evaluate_when(task.failed_when, eval_vars)
                except TemplateError as e:
                    return self._fail_result(result, f"Error evaluating 'failed_when': {e}")
                if failed:
                    self._fail_result(result, result.msg or "failed_when condition was met")
                else:
                    result.status = TaskStatus.CHANGED if result.changed else TaskStatus.OK

        return result

    async def _run_handlers(self, plan: ExecutionPlan, contexts: List[HostContext], play_result: PlayResult) -> None:
        """Run notified handlers once each, in definition order."""
        for handler in plan.handlers:
            notified = [ctx for ctx in contexts if ctx.active and ctx.is_notified(handler)]
            if not notified:
                continue
            results = await self.run_task(handler, notified, handler=True)
            self._record(play_result, results)
            self._check_fatal(plan.play, handler, contexts)

    def _create_context(
        self,
        play: Play,
        host: Host,
        host_vars: Optional[Dict[str, Dict[str, Any]]],
    ) -> HostContext:
        inventory_vars = host_vars.get(host.name) if host_vars else None
        return HostContext(
            host=host,
            host_vars={**self.magic_vars, **(inventory_vars if inventory_vars is not None else host.get_vars())},
            play_vars=dict(play.vars),
            extra_vars=self.extra_vars,
            facts=self._facts.setdefault(host.name, {}),
            registered=self._registered.setdefault(host.name, {}),
            pool=self.pool,
            check_mode=self.check_mode,
            play_become=BecomeSettings(play.become, play.become_user, play.become_method),
            play_environment=dict(play.environment),
        )

    def _check_fatal(self, play: Play, task: Task, contexts: List[HostContext]) -> None:
        if not play.any_errors_fatal:
            return
        for ctx in contexts:
            if not ctx.active:
                raise HostFailedError(ctx.name, task.name, "was unreachable" if ctx.unreachable else "failed")

    def _warn_unknown_notifications(self, plan: ExecutionPlan, task: Task, results: List[TaskResult]) -> None:
        if not task.notify or not any(r.changed for r in results):
            return
        for name in task.notify:
            if not plan.handlers_for(name):
                self.display.warning(f"Task {task.name!r} notified unknown handler {name!r}")

    @staticmethod
    def _record(play_result: PlayResult, results: List[TaskResult]) -> None:
        for result in results:
            play_result.add_result(result)

    @staticmethod
    def _with_registered(task: Task, variables: Dict[str, Any], result: TaskResult) -> Dict[str, Any]:
        if not task.register:
            return variables
        return {**variables, task.register: result.to_registered()}

    @staticmethod
    def _apply_facts(ctx: HostContext, result: TaskResult) -> None:
        facts = result.results.get('ansible_facts')
        if isinstance(facts, dict) and not result.failed:
            ctx.add_facts(facts)

    @staticmethod
    def _fail_result(result: TaskResult, msg: str) -> TaskResult:
        result.status = TaskStatus.FAILED
        result.msg = msg
        return result

    @staticmethod
    def _failed(ctx: HostContext, task: Task, msg: str) -> TaskResult:
        return TaskResult(host=ctx.name, task_name=task.name, status=TaskStatus.FAILED, msg=msg)

    @staticmethod
    def _skipped(ctx: HostContext, task: Task, msg: str) -> TaskResult:
        return TaskResult(host=ctx.name, task_name=task.name, status=TaskStatus.SKIPPED, msg=msg)
