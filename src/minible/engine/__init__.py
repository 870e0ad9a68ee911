"""
Minible Engine Module

Core engine: inventory, playbook compilation, scheduling and results.
"""

from minible.engine.config import RunConfig, load_config
from minible.engine.errors import (
    ConnectionError,
    ExitCode,
    MinibleError,
    ModuleError,
    ParseError,
    UnsupportedFeatureError,
)
from minible.engine.inventory import InventoryManager
from minible.engine.plan import ExecutionPlan, compile_play
from minible.engine.playbook import Play, PlaybookParser, Task
from minible.engine.results import PlaybookResult, PlayResult, TaskResult
from minible.engine.templating import TemplateEngine
from minible.engine.scheduler import Scheduler

__all__ = [
    'RunConfig',
    'load_config',
    'InventoryManager',
    'PlaybookParser',
    'Play',
    'Task',
    'ExecutionPlan',
    'compile_play',
    'TemplateEngine',
    'Scheduler',
    'TaskResult',
    'PlayResult',
    'PlaybookResult',
    'ExitCode',
    'MinibleError',
    'ParseError',
    'UnsupportedFeatureError',
    'ConnectionError',
    'ModuleError',
]
