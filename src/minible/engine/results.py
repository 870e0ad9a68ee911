"""
Minible Result Classes

Per (host, task) outcomes and their reduction into per-host statistics,
play results and a run summary with an exit status.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from minible.engine.errors import ExitCode


class TaskStatus(Enum):
    """Status of a task execution on one host."""
    OK = "ok"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNREACHABLE = "unreachable"


@dataclass
class TaskResult:
    """Result of executing a single task on a single host."""

    host: str
    task_name: str
    status: TaskStatus
    changed: bool = False
    rc: int = 0
    stdout: str = ""
    stderr: str = ""
    msg: str = ""
    # A failure the task tolerated through ignore_errors
    ignored: bool = False
    attempts: int = 1
    # Module-specific return values
    results: Dict[str, Any] = field(default_factory=dict)
    loop_results: Optional[List['TaskResult']] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        result: Dict[str, Any] = {
            "host": self.host,
            "task": self.task_name,
            "status": self.status.value,
            "changed": self.changed,
            "rc": self.rc,
        }
        if self.stdout:
            result["stdout"] = self.stdout
        if self.stderr:
            result["stderr"] = self.stderr
        if self.msg:
            result["msg"] = self.msg
        if self.ignored:
            result["ignored"] = True
        if self.attempts > 1:
            result["attempts"] = self.attempts
        if self.results:
            result["results"] = self.results
        if self.loop_results:
            result["loop_results"] = [r.to_dict() for r in self.loop_results]
        return result

    def to_registered(self) -> Dict[str, Any]:
        """The value a task's 'register' variable receives."""
        registered: Dict[str, Any] = {
            'changed': self.changed,
            'failed': self.failed,
            'skipped': self.status == TaskStatus.SKIPPED,
            'unreachable': self.status == TaskStatus.UNREACHABLE,
            'rc': self.rc,
            'stdout': self.stdout,
            'stderr': self.stderr,
            'stdout_lines': self.stdout.splitlines(),
            'stderr_lines': self.stderr.splitlines(),
            'msg': self.msg,
            'attempts': self.attempts,
        }
        registered.update(self.results)
        if self.loop_results is not None:
            registered['results'] = [r.to_registered() for r in self.loop_results]
        return registered

    @property
    def failed(self) -> bool:
        return self.status in (TaskStatus.FAILED, TaskStatus.UNREACHABLE)

    @property
    def ok(self) -> bool:
        """True for ok or changed."""
        return self.status in (TaskStatus.OK, TaskStatus.CHANGED)

    @property
    def counts_as_failure(self) -> bool:
        """A failure that removes the host from the play."""
        return self.failed and not self.ignored


@dataclass
class HostStats:
    """Statistics for a single host across tasks."""

    host: str
    ok: int = 0
    changed: int = 0
    failed: int = 0
    skipped: int = 0
    unreachable: int = 0
    ignored: int = 0

    def record(self, result: TaskResult) -> None:
        """Record one task outcome. Changed tasks also count as ok."""
        status = result.status
        if status == TaskStatus.FAILED and result.ignored:
            self.ignored += 1
        elif status == TaskStatus.OK:
            self.ok += 1
        elif status == TaskStatus.CHANGED:
            self.ok += 1
            self.changed += 1
        elif status == TaskStatus.FAILED:
            self.failed += 1
        elif status == TaskStatus.SKIPPED:
            self.skipped += 1
        elif status == TaskStatus.UNREACHABLE:
            self.unreachable += 1

    def merge(self, other: 'HostStats') -> None:
        self.ok += other.ok
        self.changed += other.changed
        self.failed += other.failed
        self.skipped += other.skipped
        self.unreachable += other.unreachable
        self.ignored += other.ignored

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "changed": self.changed,
            "unreachable": self.unreachable,
            "failed": self.failed,
            "skipped": self.skipped,
            "ignored": self.ignored,
        }

    @property
    def has_failures(self) -> bool:
        return self.failed > 0 or self.unreachable > 0


@dataclass
class PlayResult:
    """Result of executing a single play."""

    play_name: str
    hosts: List[str]
    task_results: List[TaskResult] = field(default_factory=list)
    host_stats: Dict[str, HostStats] = field(default_factory=dict)
    aborted: bool = False

    def __post_init__(self) -> None:
        for host in self.hosts:
            self.host_stats.setdefault(host, HostStats(host))

    def add_result(self, result: TaskResult) -> None:
        self.task_results.append(result)
        if result.host not in self.host_stats:
            self.host_stats[result.host] = HostStats(result.host)
        self.host_stats[result.host].record(result)

    def results_for(self, host: str) -> List[TaskResult]:
        return [r for r in self.task_results if r.host == host]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "play": self.play_name,
            "hosts": self.hosts,
            "tasks": [r.to_dict() for r in self.task_results],
            "stats": {h: s.to_dict() for h, s in self.host_stats.items()},
        }

    @property
    def has_failures(self) -> bool:
        return self.aborted or any(s.has_failures for s in self.host_stats.values())


@dataclass
class PlaybookResult:
    """Result of executing an entire playbook: the run summary."""

    playbook_path: str
    play_results: List[PlayResult] = field(default_factory=list)

    def add_play_result(self, result: PlayResult) -> None:
        self.play_results.append(result)

    def get_final_stats(self) -> Dict[str, HostStats]:
        """Stats for every host, summed across plays, in first-seen order."""
        final_stats: Dict[str, HostStats] = {}
        for play_result in self.play_results:
            for host, stats in play_result.host_stats.items():
                if host not in final_stats:
                    final_stats[host] = HostStats(host)
                final_stats[host].merge(stats)
        return final_stats

    def totals(self) -> HostStats:
        """All hosts' stats summed."""
        total = HostStats("*")
        for stats in self.get_final_stats().values():
            total.merge(stats)
        return total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "playbook": self.playbook_path,
            "plays": [p.to_dict() for p in self.play_results],
            "stats": {h: s.to_dict() for h, s in self.get_final_stats().items()},
            "success": self.success,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)

    @property
    def success(self) -> bool:
        return not any(p.has_failures for p in self.play_results)

    @property
    def exit_code(self) -> int:
        return int(ExitCode.SUCCESS if self.success else ExitCode.HOST_FAILED)
