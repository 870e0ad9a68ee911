"""
Minible Modules

Built-in modules for task execution.
"""

from minible.modules.base import Module, ModuleResult, create_module_runner, get_module, list_modules

__all__ = [
    'Module',
    'ModuleResult',
    'create_module_runner',
    'get_module',
    'list_modules',
]
