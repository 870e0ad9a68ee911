"""
Tests for the linear scheduler: ordering, failure isolation, retries, loops,
conditionals, handlers and variables.
"""

import asyncio
import io
from typing import List

import pytest

from minible.connections.base import ConnectionPool, RunResult
from minible.engine.display import Display
from minible.engine.inventory import Host
from minible.engine.plan import compile_play
from minible.engine.playbook import Play, RetryPolicy, Task
from minible.engine.results import PlaybookResult, PlayResult, TaskResult, TaskStatus
from minible.engine.scheduler import HostContext, Scheduler
from minible.modules.base import create_module_runner


OS_RELEASE = 'ID=ubuntu\nVERSION_ID="22.04"\n'


def cmd(name: str, command: str, **kwargs) -> Task:
    return Task(name=name, module="command", args={"_raw_params": command}, **kwargs)


def debug(name: str, msg: str, **kwargs) -> Task:
    return Task(name=name, module="debug", args={"msg": msg}, **kwargs)


def hosts(*names: str) -> List[Host]:
    return [Host(name) for name in names]


def make_scheduler(transport, **kwargs) -> Scheduler:
    return Scheduler(create_module_runner(), pool=ConnectionPool(transport.factory), **kwargs)


async def run_play(play: Play, targets: List[Host], transport, scheduler: Scheduler = None, **kwargs) -> PlayResult:
    scheduler = scheduler or make_scheduler(transport, **kwargs)
    return await scheduler.run_play(compile_play(play), targets)


def outcomes(result: PlayResult, task_name: str):
    return {r.host: r for r in result.task_results if r.task_name == task_name}


class TestLinearStrategy:
    """Every host finishes a task before the next task starts."""

    @pytest.mark.asyncio
    async def test_task_order(self, transport):
        play = Play(name="p", hosts="all", tasks=[cmd("one", "echo one"), cmd("two", "echo two")])
        result = await run_play(play, hosts("web1", "web2"), transport)

        assert [(r.task_name, r.host) for r in result.task_results] == [
            ("one", "web1"), ("one", "web2"), ("two", "web1"), ("two", "web2"),
        ]
        assert transport.connections["web1"].commands == ["echo one", "echo two"]
        assert result.host_stats["web2"].changed == 2

    @pytest.mark.asyncio
    async def test_forks_bound_concurrency(self):
        running = 0
        peak = 0

        async def module_runner(task, ctx, args, task_vars):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return TaskResult(host=ctx.name, task_name=task.name, status=TaskStatus.OK)

        scheduler = Scheduler(module_runner, forks=2)
        play = Play(name="p", hosts="all", tasks=[debug("t", "hi")])
        result = await scheduler.run_play(compile_play(play), hosts("a", "b", "c", "d", "e"))

        assert peak == 2
        assert len(result.task_results) == 5

    @pytest.mark.asyncio
    async def test_sessions_open_lazily(self, transport):
        play = Play(name="p", hosts="all", tasks=[debug("t", "no session needed")])
        await run_play(play, hosts("web1"), transport)
        assert transport.opened == []

    @pytest.mark.asyncio
    async def test_one_session_per_host(self, transport):
        play = Play(name="p", hosts="all", tasks=[cmd("a", "true"), cmd("b", "true"), cmd("c", "true")])
        await run_play(play, hosts("web1", "web2"), transport)
        assert sorted(transport.opened) == ["web1", "web2"]

    @pytest.mark.asyncio
    async def test_no_hosts(self, transport):
        play = Play(name="p", hosts="nothing", tasks=[debug("t", "x")])
        result = await run_play(play, [], transport)
        assert result.task_results == []

    @pytest.mark.asyncio
    async def test_unexpected_runner_error_fails_host(self):
        async def module_runner(task, ctx, args, task_vars):
            if ctx.name == "bad":
                raise RuntimeError("bug")
            return TaskResult(host=ctx.name, task_name=task.name, status=TaskStatus.OK)

        play = Play(name="p", hosts="all", tasks=[debug("t", "x")])
        result = await Scheduler(module_runner).run_play(compile_play(play), hosts("good", "bad"))
        statuses = {r.host: r.status for r in result.task_results}
        assert statuses == {"good": TaskStatus.OK, "bad": TaskStatus.FAILED}


class TestFailureIsolation:
    """A failing or unreachable host leaves the play; the others carry on."""

    @pytest.mark.asyncio
    async def test_failed_host_stops_others_continue(self, transport):
        play = Play(name="p", hosts="all", tasks=[
            Task(name="break", module="fail", args={}, when="inventory_hostname == 'web1'"),
            debug("after", "still here"),
        ])
        result = await run_play(play, hosts("web1", "web2"), transport)

        assert outcomes(result, "break")["web1"].status == TaskStatus.FAILED
        assert list(outcomes(result, "after")) == ["web2"]
        assert result.host_stats["web1"].failed == 1
        assert result.host_stats["web2"].to_dict()["skipped"] == 1
        assert PlaybookResult("site.yml", [result]).exit_code == 2

    @pytest.mark.asyncio
    async def test_unreachable_host(self, transport):
        transport.unreachable.add("web2")
        play = Play(name="p", hosts="all", tasks=[cmd("first", "uptime"), cmd("second", "uptime")])
        result = await run_play(play, hosts("web1", "web2"), transport)

        assert outcomes(result, "first")["web2"].status == TaskStatus.UNREACHABLE
        assert "Connection refused" in outcomes(result, "first")["web2"].msg
        assert list(outcomes(result, "second")) == ["web1"]
        assert result.host_stats["web2"].unreachable == 1
        assert transport.opened.count("web2") == 1

    @pytest.mark.asyncio
    async def test_all_hosts_failed_stops_play(self, transport):
        play = Play(name="p", hosts="all", tasks=[Task(name="f", module="fail", args={}), debug("never", "x")])
        result = await run_play(play, hosts("web1"), transport)
        assert [r.task_name for r in result.task_results] == ["f"]

    @pytest.mark.asyncio
    async def test_ignore_errors(self, transport):
        play = Play(name="p", hosts="all", tasks=[
            Task(name="f", module="fail", args={"msg": "tolerated"}, ignore_errors=True),
            debug("after", "x"),
        ])
        result = await run_play(play, hosts("web1"), transport)

        assert outcomes(result, "f")["web1"].ignored
        assert "web1" in outcomes(result, "after")
        assert result.host_stats["web1"].ignored == 1
        assert result.host_stats["web1"].failed == 0
        assert PlaybookResult("site.yml", [result]).exit_code == 0

    @pytest.mark.asyncio
    async def test_any_errors_fatal(self, transport):
        play = Play(name="p", hosts="all", any_errors_fatal=True, tasks=[
            Task(name="break", module="fail", args={}, when="inventory_hostname == 'web1'"),
            debug("after", "x"),
        ])
        result = await run_play(play, hosts("web1", "web2"), transport)

        assert result.aborted
        assert outcomes(result, "after") == {}
        assert PlaybookResult("site.yml", [result]).exit_code == 2


class TestRetries:
    """until / retries / delay."""

    @pytest.mark.asyncio
    async def test_until_met(self, transport):
        transport.script("web1", "curl", RunResult(0, "starting", ""), RunResult(0, "ready", ""))
        task = cmd("wait", "curl -s localhost", register="page",
                   retry=RetryPolicy(retries=3, delay=0, until="'ready' in page.stdout"))
        result = await run_play(Play(name="p", hosts="all", tasks=[task]), hosts("web1"), transport)

        outcome = outcomes(result, "wait")["web1"]
        assert outcome.status == TaskStatus.CHANGED
        assert outcome.attempts == 2
        assert len(transport.connections["web1"].commands) == 2

    @pytest.mark.asyncio
    async def test_until_never_met(self, transport):
        transport.script("web1", "curl", RunResult(0, "starting", ""))
        task = cmd("wait", "curl -s localhost", register="page",
                   retry=RetryPolicy(retries=2, delay=0, until="'ready' in page.stdout"))
        result = await run_play(Play(name="p", hosts="all", tasks=[task]), hosts("web1"), transport)

        outcome = outcomes(result, "wait")["web1"]
        assert outcome.status == TaskStatus.FAILED
        assert outcome.attempts == 3
        assert outcome.msg == "Retried 2 times; 'until' condition never met"

    @pytest.mark.asyncio
    async def test_retry_while_failing(self, transport):
        transport.script("web1", "flaky", RunResult(1, "", "busy"), RunResult(0, "", ""))
        task = cmd("flaky", "flaky-command", retry=RetryPolicy(retries=2, delay=0))
        result = await run_play(Play(name="p", hosts="all", tasks=[task]), hosts("web1"), transport)

        outcome = outcomes(result, "flaky")["web1"]
        assert outcome.status == TaskStatus.CHANGED
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_unreachable_not_retried(self, transport):
        transport.unreachable.add("web1")
        task = cmd("t", "true", retry=RetryPolicy(retries=5, delay=0))
        result = await run_play(Play(name="p", hosts="all", tasks=[task]), hosts("web1"), transport)

        assert outcomes(result, "t")["web1"].status == TaskStatus.UNREACHABLE
        assert transport.opened == ["web1"]


class TestConditionals:
    """when, register, changed_when, failed_when."""

    @pytest.mark.asyncio
    async def test_register_and_when(self, transport):
        transport.script("web1", "check", RunResult(0, "yes\n", ""))
        play = Play(name="p", hosts="all", tasks=[
            cmd("check", "check-config", register="chk"),
            debug("when true", "ok", when="chk.stdout == 'yes' and chk is changed"),
            debug("when false", "no", when="chk.rc != 0"),
        ])
        result = await run_play(play, hosts("web1"), transport)

        assert outcomes(result, "when true")["web1"].status == TaskStatus.OK
        assert outcomes(result, "when false")["web1"].status == TaskStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_when_error_fails_host(self, transport):
        play = Play(name="p", hosts="all", tasks=[debug("t", "x", when="undefined_var == 1")])
        result = await run_play(play, hosts("web1"), transport)
        outcome = outcomes(result, "t")["web1"]
        assert outcome.status == TaskStatus.FAILED
        assert "Error evaluating 'when'" in outcome.msg

    @pytest.mark.asyncio
    async def test_template_error_fails_host(self, transport):
        play = Play(name="p", hosts="all", tasks=[debug("t", "{{ undefined_var }}")])
        result = await run_play(play, hosts("web1"), transport)
        assert "Error rendering task arguments" in outcomes(result, "t")["web1"].msg

    @pytest.mark.asyncio
    async def test_changed_when_false(self, transport):
        play = Play(name="p", hosts="all", tasks=[cmd("uptime", "uptime", changed_when=False)])
        result = await run_play(play, hosts("web1"), transport)
        outcome = outcomes(result, "uptime")["web1"]
        assert outcome.status == TaskStatus.OK
        assert not outcome.changed

    @pytest.mark.asyncio
    async def test_changed_when_uses_registered_result(self, transport):
        transport.script("web1", "migrate", RunResult(0, "0 migrations applied", ""))
        task = cmd("migrate", "migrate", register="m", changed_when="'0 migrations' not in m.stdout")
        result = await run_play(Play(name="p", hosts="all", tasks=[task]), hosts("web1"), transport)
        assert outcomes(result, "migrate")["web1"].status == TaskStatus.OK

    @pytest.mark.asyncio
    async def test_failed_when(self, transport):
        transport.script("web1", "deploy", RunResult(0, "error: disk full", ""))
        task = cmd("deploy", "deploy", register="out", failed_when="'error' in out.stdout")
        result = await run_play(Play(name="p", hosts="all", tasks=[task]), hosts("web1"), transport)
        outcome = outcomes(result, "deploy")["web1"]
        assert outcome.status == TaskStatus.FAILED
        assert outcome.msg == "failed_when condition was met"

    @pytest.mark.asyncio
    async def test_failed_when_false_overrides_rc(self, transport):
        transport.script("web1", "grep", RunResult(1, "", ""))
        play = Play(name="p", hosts="all", tasks=[
            cmd("grep", "grep -q nginx /etc/hosts", failed_when=False, changed_when=False),
            debug("after", "x"),
        ])
        result = await run_play(play, hosts("web1"), transport)
        assert outcomes(result, "grep")["web1"].status == TaskStatus.OK
        assert "web1" in outcomes(result, "after")


class TestLoops:
    """loop / with_items."""

    @pytest.mark.asyncio
    async def test_loop_registers_item_results(self, transport):
        play = Play(name="p", hosts="all", tasks=[
            debug("each", "{{ item }}", loop=["nginx", "curl"], register="out"),
            debug("joined", "{{ out.results | map(attribute='item') | join(',') }}"),
        ])
        result = await run_play(play, hosts("web1"), transport)

        each = outcomes(result, "each")["web1"]
        assert [r.msg for r in each.loop_results] == ["nginx", "curl"]
        assert outcomes(result, "joined")["web1"].msg == "nginx,curl"

    @pytest.mark.asyncio
    async def test_loop_var_and_per_item_when(self, transport):
        play = Play(name="p", hosts="all", vars={"packages": ["nginx", "curl", "git"]}, tasks=[
            Task(name="dirs", module="command", args={"_raw_params": "install {{ pkg }}"},
                 loop="{{ packages }}", loop_var="pkg", when="pkg != 'curl'"),
        ])
        result = await run_play(play, hosts("web1"), transport)

        outcome = outcomes(result, "dirs")["web1"]
        assert [r.status for r in outcome.loop_results] == [
            TaskStatus.CHANGED, TaskStatus.SKIPPED, TaskStatus.CHANGED,
        ]
        assert outcome.status == TaskStatus.CHANGED
        assert transport.connections["web1"].commands == ["install nginx", "install git"]

    @pytest.mark.asyncio
    async def test_loop_sees_facts_set_by_earlier_items(self, transport):
        play = Play(name="p", hosts="all", vars={"total": 0}, tasks=[
            Task(name="sum", module="set_fact", args={"total": "{{ total + item }}"}, loop=[1, 2, 3]),
            debug("show", "{{ total }}"),
        ])
        result = await run_play(play, hosts("web1"), transport)
        assert outcomes(result, "show")["web1"].msg == "6"

    @pytest.mark.asyncio
    async def test_empty_loop_skipped(self, transport):
        play = Play(name="p", hosts="all", tasks=[debug("none", "x", loop=[])])
        result = await run_play(play, hosts("web1"), transport)
        assert outcomes(result, "none")["web1"].status == TaskStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_loop_requires_list(self, transport):
        play = Play(name="p", hosts="all", tasks=[debug("bad", "x", loop="nginx")])
        result = await run_play(play, hosts("web1"), transport)
        outcome = outcomes(result, "bad")["web1"]
        assert outcome.status == TaskStatus.FAILED
        assert "requires a list" in outcome.msg

    @pytest.mark.asyncio
    async def test_failed_item_fails_task(self, transport):
        transport.script("web1", "install curl", RunResult(1, "", "no such package"))
        task = Task(name="i", module="command", args={"_raw_params": "install {{ item }}"}, loop=["nginx", "curl"])
        result = await run_play(Play(name="p", hosts="all", tasks=[task]), hosts("web1"), transport)
        assert outcomes(result, "i")["web1"].status == TaskStatus.FAILED


class TestHandlers:
    """Handlers run after the tasks, once, on hosts that notified them."""

    def restart(self, **kwargs) -> Task:
        return cmd("restart nginx", "systemctl restart nginx", **kwargs)

    @pytest.mark.asyncio
    async def test_handler_runs_on_notifying_host_only(self, transport):
        play = Play(
            name="p", hosts="all",
            tasks=[cmd("config", "write-config", notify=["restart nginx"], when="inventory_hostname == 'web1'")],
            handlers=[self.restart()],
        )
        result = await run_play(play, hosts("web1", "web2"), transport)

        assert list(outcomes(result, "restart nginx")) == ["web1"]
        assert transport.connections["web1"].commands[-1] == "systemctl restart nginx"

    @pytest.mark.asyncio
    async def test_handler_runs_once(self, transport):
        play = Play(
            name="p", hosts="all",
            tasks=[
                cmd("a", "write-a", notify=["restart nginx"]),
                cmd("b", "write-b", notify=["restart nginx"]),
            ],
            handlers=[self.restart()],
        )
        await run_play(play, hosts("web1"), transport)
        assert transport.connections["web1"].commands.count("systemctl restart nginx") == 1

    @pytest.mark.asyncio
    async def test_unchanged_task_does_not_notify(self, transport):
        play = Play(
            name="p", hosts="all",
            tasks=[cmd("a", "check", notify=["restart nginx"], changed_when=False)],
            handlers=[self.restart()],
        )
        result = await run_play(play, hosts("web1"), transport)
        assert outcomes(result, "restart nginx") == {}

    @pytest.mark.asyncio
    async def test_listen_topic_and_definition_order(self, transport):
        play = Play(
            name="p", hosts="all",
            tasks=[cmd("a", "write", notify=["reload site", "restart nginx"])],
            handlers=[
                self.restart(),
                cmd("reload page cache", "purge-cache", listen=["reload site"]),
            ],
        )
        result = await run_play(play, hosts("web1"), transport)
        assert [r.task_name for r in result.task_results] == ["a", "restart nginx", "reload page cache"]

    @pytest.mark.asyncio
    async def test_failed_host_skips_handlers(self, transport):
        play = Play(
            name="p", hosts="all",
            tasks=[
                cmd("a", "write", notify=["restart nginx"]),
                Task(name="break", module="fail", args={}, when="inventory_hostname == 'web2'"),
            ],
            handlers=[self.restart()],
        )
        result = await run_play(play, hosts("web1", "web2"), transport)
        assert list(outcomes(result, "restart nginx")) == ["web1"]

    @pytest.mark.asyncio
    async def test_unknown_handler_warning(self, transport):
        err = io.StringIO()
        display = Display(stream=io.StringIO(), err_stream=err, color=False)
        play = Play(name="p", hosts="all", tasks=[cmd("a", "write", notify=["missing"])])
        await run_play(play, hosts("web1"), transport, display=display)
        assert "notified unknown handler 'missing'" in err.getvalue()


class TestModesAndVariables:
    """check mode, become, facts, precedence and environment."""

    @pytest.mark.asyncio
    async def test_check_mode(self, transport):
        play = Play(name="p", hosts="all", tasks=[
            cmd("rm", "rm -rf /tmp/cache"),
            Task(name="dir", module="file", args={"path": "/var/www/demo", "state": "directory"}),
            debug("mode", "{{ ansible_check_mode }}"),
        ])
        result = await run_play(play, hosts("web1"), transport, check_mode=True)

        assert outcomes(result, "rm")["web1"].status == TaskStatus.SKIPPED
        assert outcomes(result, "dir")["web1"].status == TaskStatus.CHANGED
        assert outcomes(result, "mode")["web1"].msg == "true"
        assert transport.connections["web1"].commands == []

    @pytest.mark.asyncio
    async def test_become(self, transport):
        play = Play(name="p", hosts="all", become=True, tasks=[
            cmd("as root", "whoami"),
            cmd("as web", "whoami", become_user="www-data"),
            cmd("as self", "whoami", become=False),
        ])
        await run_play(play, hosts("web1"), transport)
        assert transport.connections["web1"].commands == [
            "sudo -n -u root /bin/sh -c whoami",
            "sudo -n -u www-data /bin/sh -c whoami",
            "whoami",
        ]

    @pytest.mark.asyncio
    async def test_gather_facts(self, transport):
        transport.script("web1", "os-release", RunResult(0, OS_RELEASE, ""))
        play = Play(name="p", hosts="all", gather_facts=True, tasks=[
            debug("distro", "{{ ansible_distribution }} {{ ansible_facts.os_family }}"),
        ])
        result = await run_play(play, hosts("web1"), transport)

        assert result.task_results[0].task_name == "Gathering Facts"
        assert outcomes(result, "distro")["web1"].msg == "Ubuntu Debian"

    @pytest.mark.asyncio
    async def test_facts_and_registered_persist_across_plays(self, transport):
        scheduler = make_scheduler(transport)
        first = Play(name="one", hosts="all", tasks=[
            Task(name="fact", module="set_fact", args={"deploy_version": "1.2"}),
            debug("reg", "hello", register="greeting"),
        ])
        second = Play(name="two", hosts="all", tasks=[
            debug("show", "{{ deploy_version }} {{ greeting.msg }}"),
        ])
        await run_play(first, hosts("web1"), transport, scheduler=scheduler)
        result = await run_play(second, hosts("web1"), transport, scheduler=scheduler)
        assert outcomes(result, "show")["web1"].msg == "1.2 hello"

    @pytest.mark.asyncio
    async def test_extra_vars_win(self, transport):
        play = Play(name="p", hosts="all", vars={"port": 80}, tasks=[debug("port", "{{ port }}", vars={"port": 81})])
        result = await run_play(play, hosts("web1"), transport, extra_vars={"port": 8080})
        assert outcomes(result, "port")["web1"].msg == "8080"

    @pytest.mark.asyncio
    async def test_magic_vars(self, transport):
        play = Play(name="p", hosts="all", tasks=[debug("dir", "{{ playbook_dir }}/{{ inventory_hostname }}")])
        result = await run_play(play, hosts("web1"), transport, magic_vars={"playbook_dir": "/srv/deploy"})
        assert outcomes(result, "dir")["web1"].msg == "/srv/deploy/web1"

    @pytest.mark.asyncio
    async def test_environment(self, transport):
        play = Play(name="p", hosts="all", vars={"lang": "C"}, environment={"PATH": "/usr/bin"}, tasks=[
            cmd("env", "locale", environment={"LANG": "{{ lang }}"}),
        ])
        await run_play(play, hosts("web1"), transport)
        assert transport.connections["web1"].environments == [{"PATH": "/usr/bin", "LANG": "C"}]


class TestHostContext:
    """Per-host state."""

    def test_variable_precedence(self):
        ctx = HostContext(
            host=Host("web1"),
            host_vars={"a": "inventory", "b": "inventory", "c": "inventory", "d": "inventory", "e": "inventory"},
            play_vars={"b": "play", "c": "play", "d": "play", "e": "play"},
            extra_vars={"e": "extra"},
        )
        ctx.add_facts({"d": "fact"})
        merged = ctx.get_vars({"c": "task", "d": "task"})
        assert [merged[k] for k in "abcde"] == ["inventory", "play", "task", "fact", "extra"]
        assert merged["ansible_check_mode"] is False

    def test_add_facts_fills_ansible_facts(self):
        ctx = HostContext(host=Host("web1"))
        ctx.add_facts({"ansible_distribution": "Ubuntu", "custom": 1})
        assert ctx.facts["ansible_facts"] == {"distribution": "Ubuntu"}
        assert ctx.facts["custom"] == 1

    def test_notify_deduplicates(self):
        ctx = HostContext(host=Host("web1"))
        ctx.notify(["restart nginx", "restart nginx"])
        assert ctx.notified == ["restart nginx"]
        assert ctx.is_notified(Task(name="x", module="debug", args={}, listen=["restart nginx"]))

    def test_become_inherits_play(self):
        from minible.engine.scheduler import BecomeSettings

        ctx = HostContext(host=Host("web1"), play_become=BecomeSettings(True, "deploy", "su"))
        settings = ctx.become_for(Task(name="t", module="debug", args={}))
        assert settings == BecomeSettings(True, "deploy", "su")
        assert not ctx.become_for(Task(name="t", module="debug", args={}, become=False)).enabled
