"""
Minible Templating Engine

Jinja2-based variable expansion for task arguments, loops and conditionals.
"""

import json
import os
import re
from typing import Any, Callable, Dict, Mapping, Optional

import yaml
from jinja2 import Environment, StrictUndefined, TemplateSyntaxError, Undefined, UndefinedError

from minible.engine.errors import TemplateError


# A string that is nothing but one {{ expression }} keeps the expression's type
SINGLE_EXPRESSION = re.compile(r'^\{\{\s*((?:(?!\}\}|\{\{).)+?)\s*\}\}$', re.DOTALL)

# Variables whose values are themselves templates are resolved this many levels deep
MAX_NESTING = 10

TRUE_STRINGS = ('true', 'yes', '1', 'on')
FALSE_STRINGS = ('false', 'no', '0', 'off', '')


def _filter_default(value: Any, default: Any = '', boolean: bool = False) -> Any:
    """Ansible's default filter: replaces undefined (or falsy, with boolean=True)."""
    if isinstance(value, Undefined):
        return default
    if boolean and not value:
        return default
    return value


def _filter_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in TRUE_STRINGS
    return bool(value)


def _filter_mandatory(value: Any, msg: Optional[str] = None) -> Any:
    if isinstance(value, Undefined):
        raise UndefinedError(msg or "Mandatory variable not defined")
    return value


def _filter_regex_search(value: Any, pattern: str) -> Optional[str]:
    match = re.search(pattern, str(value))
    return match.group(0) if match else None


def _filter_to_yaml(value: Any) -> str:
    return yaml.safe_dump(value, default_flow_style=False)


CUSTOM_FILTERS: Dict[str, Callable[..., Any]] = {
    'default': _filter_default,
    'd': _filter_default,
    'bool': _filter_bool,
    'mandatory': _filter_mandatory,
    'to_json': lambda x: json.dumps(x),
    'to_yaml': _filter_to_yaml,
    'from_json': lambda x: json.loads(x),
    'basename': lambda p: os.path.basename(str(p)),
    'dirname': lambda p: os.path.dirname(str(p)),
    'regex_replace': lambda v, pattern, repl='': re.sub(pattern, repl, str(v)),
    'regex_search': _filter_regex_search,
}


class TemplateEngine:
    """
    Jinja2 templating with Ansible-like behaviour.

    Provides:
    - Variable interpolation in strings, recursively through dicts/lists
    - Native values for strings that are a single {{ expression }}
    - 'when' / 'until' / 'changed_when' condition evaluation
    - Strict undefined variables, with working 'is defined' and 'default'
    """

    def __init__(self):
        self.env = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        self.env.filters.update(CUSTOM_FILTERS)
        self.env.tests['success'] = lambda r: not _result_flag(r, 'failed')
        self.env.tests['succeeded'] = self.env.tests['success']
        self.env.tests['failed'] = lambda r: _result_flag(r, 'failed')
        self.env.tests['changed'] = lambda r: _result_flag(r, 'changed')
        self.env.tests['skipped'] = lambda r: _result_flag(r, 'skipped')

    def render(self, template_str: Any, variables: Mapping[str, Any]) -> Any:
        """
        Render a template string.

        Strings without template markers are returned untouched. A string that
        is exactly one ``{{ expr }}`` returns the expression's native value.

        Raises:
            TemplateError: If the template is invalid or a variable is undefined
        """
        value = self._render_once(template_str, variables)
        for _ in range(MAX_NESTING):
            if not isinstance(value, str) or value == template_str:
                break
            template_str = value
            value = self._render_once(template_str, variables)
        return value

    def _render_once(self, template_str: Any, variables: Mapping[str, Any]) -> Any:
        if not isinstance(template_str, str):
            return template_str

        if '{{' not in template_str and '{%' not in template_str:
            return template_str

        try:
            match = SINGLE_EXPRESSION.match(template_str)
            if match:
                value = self.env.compile_expression(match.group(1), undefined_to_none=False)(dict(variables))
                if isinstance(value, Undefined):
                    # Force StrictUndefined to raise its descriptive error
                    str(value)
                return value
            return self.env.from_string(template_str).render(dict(variables))
        except UndefinedError as e:
            raise TemplateError(f"Undefined variable: {e}", template=template_str)
        except TemplateSyntaxError as e:
            raise TemplateError(f"Template syntax error: {e}", template=template_str)
        except TemplateError:
            raise
        except Exception as e:
            raise TemplateError(str(e), template=template_str)

    def render_recursive(self, data: Any, variables: Mapping[str, Any]) -> Any:
        """Render every string in a nested dict/list structure."""
        if isinstance(data, str):
            return self.render(data, variables)

        if isinstance(data, dict):
            return {
                (self.render(k, variables) if isinstance(k, str) else k): self.render_recursive(v, variables)
                for k, v in data.items()
            }

        if isinstance(data, (list, tuple)):
            return [self.render_recursive(item, variables) for item in data]

        return data

    def evaluate_when(self, condition: Any, variables: Mapping[str, Any]) -> bool:
        """
        Evaluate a bare Jinja2 expression (no braces) as a boolean.

        Raises:
            TemplateError: If the expression is invalid or uses undefined vars
        """
        if condition is None:
            return True
        if isinstance(condition, bool):
            return condition
        if isinstance(condition, (list, tuple)):
            return all(self.evaluate_when(c, variables) for c in condition)

        expression = str(condition).strip()
        if not expression:
            return True
        if expression.startswith('{{') and expression.endswith('}}'):
            expression = expression[2:-2].strip()

        try:
            value = self.env.compile_expression(expression, undefined_to_none=False)(dict(variables))
            if isinstance(value, Undefined):
                str(value)
        except UndefinedError as e:
            raise TemplateError(f"Undefined variable in condition: {e}", template=expression)
        except TemplateSyntaxError as e:
            raise TemplateError(f"Condition syntax error: {e}", template=expression)
        except Exception as e:
            raise TemplateError(str(e), template=expression)

        return to_bool(value)


def _result_flag(result: Any, key: str) -> bool:
    if isinstance(result, Mapping):
        return bool(result.get(key, False))
    return False


def to_bool(value: Any) -> bool:
    """Convert a rendered value to a boolean (Ansible-style)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
        return True
    return bool(value)


_engine: Optional[TemplateEngine] = None


def get_template_engine() -> TemplateEngine:
    """Get the shared template engine instance."""
    global _engine
    if _engine is None:
        _engine = TemplateEngine()
    return _engine


def render(template_str: Any, variables: Mapping[str, Any]) -> Any:
    return get_template_engine().render(template_str, variables)


def render_recursive(data: Any, variables: Mapping[str, Any]) -> Any:
    return get_template_engine().render_recursive(data, variables)


def evaluate_when(condition: Any, variables: Mapping[str, Any]) -> bool:
    return get_template_engine().evaluate_when(condition, variables)
