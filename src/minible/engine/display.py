"""
Minible Console Display

Play/task banners, per-host status lines and the play recap, printed in the
familiar ansible-playbook layout. Everything is silenced in JSON mode.
"""

import sys
from typing import Dict, Optional, TextIO

from minible.engine.results import HostStats, TaskResult


COLORS = {
    'ok': '\033[32m',           # Green
    'changed': '\033[33m',      # Yellow
    'failed': '\033[31m',       # Red
    'unreachable': '\033[31m',  # Red
    'skipped': '\033[36m',      # Cyan
    'ignored': '\033[35m',      # Magenta
}
RESET = '\033[0m'
BANNER_WIDTH = 72


class Display:
    """Console output for a run."""

    def __init__(
        self,
        verbosity: int = 0,
        quiet: bool = False,
        color: Optional[bool] = None,
        stream: Optional[TextIO] = None,
        err_stream: Optional[TextIO] = None,
    ):
        self.verbosity = verbosity
        self.quiet = quiet
        self.stream = stream or sys.stdout
        self.err_stream = err_stream or sys.stderr
        if color is None:
            color = hasattr(self.stream, 'isatty') and self.stream.isatty()
        self.color = color

    def banner(self, text: str, fill: str = '*') -> None:
        if self.quiet:
            return
        self._print(f"\n{text} " + fill * max(3, BANNER_WIDTH - len(text) - 1))

    def playbook(self, path: str) -> None:
        self.banner(f"PLAYBOOK: {path}")

    def play(self, name: str) -> None:
        self.banner(f"PLAY [{name}]")

    def task(self, name: str, handler: bool = False) -> None:
        label = "RUNNING HANDLER" if handler else "TASK"
        self.banner(f"{label} [{name}]")

    def host_result(self, result: TaskResult, show_msg: bool = False) -> None:
        """Print one host's outcome for the current task."""
        if self.quiet:
            return

        status = result.status.value
        line = f"{self._paint(status, status)}: [{result.host}]"
        if result.attempts > 1:
            line += f" (attempts: {result.attempts})"

        msg = result.msg
        if msg and (result.failed or show_msg or self.verbosity > 0):
            line += f" => {msg}"
        if result.ignored:
            line += f" {self._paint('ignored', '...ignoring')}"
        self._print(line)

        if self.verbosity >= 2 and result.stdout:
            self._print(f"  stdout: {result.stdout[:500]}")
        if self.verbosity >= 1 and result.stderr and result.failed:
            self._print(f"  stderr: {result.stderr[:500]}")

    def retrying(self, host: str, task_name: str, remaining: int) -> None:
        if self.quiet:
            return
        self._print(f"FAILED - RETRYING: [{host}]: {task_name} ({remaining} retries left).")

    def warning(self, msg: str) -> None:
        if self.quiet:
            return
        self._print(self._paint('changed', f"[WARNING]: {msg}"), err=True)

    def error(self, msg: str) -> None:
        """Errors are printed even in quiet mode, to stderr."""
        self._print(self._paint('failed', msg), err=True)

    def recap(self, host_stats: Dict[str, HostStats]) -> None:
        if self.quiet:
            return

        self.banner("PLAY RECAP")
        for host, stats in host_stats.items():
            parts = [
                self._paint('ok' if stats.ok else '', f"ok={stats.ok}"),
                self._paint('changed' if stats.changed else '', f"changed={stats.changed}"),
                self._paint('unreachable' if stats.unreachable else '', f"unreachable={stats.unreachable}"),
                self._paint('failed' if stats.failed else '', f"failed={stats.failed}"),
                self._paint('skipped' if stats.skipped else '', f"skipped={stats.skipped}"),
                self._paint('ignored' if stats.ignored else '', f"ignored={stats.ignored}"),
            ]
            label = self._paint('failed' if stats.has_failures else ('changed' if stats.changed else 'ok'), host)
            self._print(f"{label:30} : " + "  ".join(parts))

    def _paint(self, status: str, text: str) -> str:
        if not self.color or status not in COLORS:
            return text
        return f"{COLORS[status]}{text}{RESET}"

    def _print(self, text: str, err: bool = False) -> None:
        print(text, file=self.err_stream if err else self.stream)