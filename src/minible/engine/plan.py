"""
Minible Execution Plan

Compiles a parsed Play into the fixed, ordered list of steps the scheduler
runs on every host, after tag selection.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from minible.engine.playbook import Play, Task


logger = logging.getLogger(__name__)

ALWAYS_TAG = "always"
NEVER_TAG = "never"


@dataclass(frozen=True)
class PlannedTask:
    """One step of a plan: the task and its position in the play."""

    index: int
    task: Task

    @property
    def name(self) -> str:
        return self.task.name


@dataclass(frozen=True)
class ExecutionPlan:
    """
    The executable form of a play.

    Steps run in ``steps`` order on every host; handlers run after the steps,
    in definition order, on hosts that notified them.
    """

    play: Play
    steps: Tuple[PlannedTask, ...]
    handlers: Tuple[Task, ...]
    skipped_by_tags: int = 0

    @property
    def name(self) -> str:
        return self.play.name

    @property
    def hosts(self) -> str:
        return self.play.hosts

    @property
    def become(self) -> bool:
        return self.play.become

    @property
    def vars(self) -> Dict[str, Any]:
        return self.play.vars

    def __len__(self) -> int:
        return len(self.steps)

    def handlers_for(self, notification: str) -> List[Task]:
        """Handlers answering a notification, by name or 'listen' topic."""
        return [
            h for h in self.handlers
            if h.name == notification or notification in h.listen
        ]


def should_run(task_tags: Iterable[str], tags: Sequence[str], skip_tags: Sequence[str]) -> bool:
    """
    Decide whether a task is selected by --tags / --skip-tags.

    - skip_tags wins over everything, including 'always'
    - 'always' tasks run unless skipped
    - 'never' tasks run only when one of their tags is requested
    - with no requested tags, everything except 'never' runs
    - 'all' selects every task except 'never'; 'tagged'/'untagged' select by presence
    """
    task_tags = set(task_tags)

    if skip_tags:
        skip = set(skip_tags)
        if task_tags & skip:
            return False
        if 'tagged' in skip and task_tags:
            return False
        if 'untagged' in skip and not task_tags:
            return False

    if ALWAYS_TAG in task_tags:
        return True

    requested = set(tags)
    if NEVER_TAG in task_tags:
        return bool((task_tags - {NEVER_TAG}) & requested)

    if not requested or 'all' in requested:
        return True
    if 'tagged' in requested and task_tags:
        return True
    if 'untagged' in requested and not task_tags:
        return True
    return bool(task_tags & requested)


def compile_play(
    play: Play,
    tags: Optional[Sequence[str]] = None,
    skip_tags: Optional[Sequence[str]] = None,
) -> ExecutionPlan:
    """Compile a play into an ExecutionPlan, applying tag selection."""
    tags = list(tags or [])
    skip_tags = list(skip_tags or [])

    steps: List[PlannedTask] = []
    skipped = 0
    for index, task in enumerate(play.tasks):
        if should_run(task.tags, tags, skip_tags):
            steps.append(PlannedTask(index=index, task=task))
        else:
            skipped += 1

    if skipped:
        logger.debug("Play %r: %d task(s) deselected by tags", play.name, skipped)

    return ExecutionPlan(
        play=play,
        steps=tuple(steps),
        handlers=tuple(play.handlers),
        skipped_by_tags=skipped,
    )


def compile_playbook(
    plays: Sequence[Play],
    tags: Optional[Sequence[str]] = None,
    skip_tags: Optional[Sequence[str]] = None,
) -> List[ExecutionPlan]:
    return [compile_play(play, tags, skip_tags) for play in plays]
