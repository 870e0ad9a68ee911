"""
Minible Playbook Parser

Parses YAML playbooks into Play and Task objects.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from minible.engine.errors import ParseError, UnsupportedFeatureError


# Collections whose modules resolve to the built-in short names
BUILTIN_COLLECTIONS = ('ansible.builtin.', 'ansible.legacy.')

# Modules whose free-form string argument is the command itself
FREE_FORM_MODULES = ('command', 'shell')

# Task keys that are NOT module names
TASK_KEYWORDS = {
    'name', 'when', 'register', 'loop', 'with_items', 'with_list', 'loop_control',
    'until', 'retries', 'delay', 'changed_when', 'failed_when', 'ignore_errors',
    'tags', 'notify', 'listen', 'become', 'become_user', 'become_method',
    'environment', 'args', 'vars', 'no_log', 'check_mode',
}

PLAY_KEYWORDS = {
    'name', 'hosts', 'vars', 'vars_files', 'tasks', 'pre_tasks', 'post_tasks',
    'handlers', 'gather_facts', 'become', 'become_user', 'become_method',
    'tags', 'any_errors_fatal', 'environment',
}

# Transport settings are fixed per host in the inventory for the whole run
PLAY_TRANSPORT_KEYS = ('connection', 'remote_user')

# Keywords that parse in real Ansible but that Minible does not execute
UNSUPPORTED_KEYS = {
    'block', 'rescue', 'always', 'roles', 'include', 'include_tasks',
    'import_tasks', 'include_role', 'import_role', 'import_playbook',
    'async', 'poll', 'delegate_to', 'delegate_facts', 'local_action',
    'serial', 'strategy', 'run_once', 'action',
}

DEFAULT_RETRIES = 3
DEFAULT_DELAY = 5

INLINE_ARG_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how far apart a task is retried."""

    retries: int = DEFAULT_RETRIES
    delay: float = DEFAULT_DELAY
    until: Optional[str] = None

    @property
    def attempts(self) -> int:
        """Total attempts: the first run plus the retries."""
        return self.retries + 1


@dataclass
class Task:
    """A single task: a module call plus its control keywords."""

    name: str
    module: str
    args: Dict[str, Any]
    register: Optional[str] = None
    when: Optional[Any] = None
    loop: Optional[Any] = None
    loop_var: str = "item"
    retry: Optional[RetryPolicy] = None
    ignore_errors: bool = False
    changed_when: Optional[Any] = None
    failed_when: Optional[Any] = None
    environment: Dict[str, str] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    become: Optional[bool] = None  # None = inherit from play
    become_user: Optional[str] = None
    become_method: Optional[str] = None
    notify: List[str] = field(default_factory=list)
    listen: List[str] = field(default_factory=list)
    vars: Dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"Task(name={self.name!r}, module={self.module!r})"


@dataclass
class Play:
    """A host selector plus the ordered tasks to apply to it."""

    name: str
    hosts: str
    tasks: List[Task] = field(default_factory=list)
    handlers: List[Task] = field(default_factory=list)
    vars: Dict[str, Any] = field(default_factory=dict)
    vars_files: List[str] = field(default_factory=list)
    gather_facts: bool = False
    environment: Dict[str, str] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    become: bool = False
    become_user: str = "root"
    become_method: str = "sudo"
    any_errors_fatal: bool = False

    def __repr__(self) -> str:
        return f"Play(name={self.name!r}, hosts={self.hosts!r}, tasks={len(self.tasks)})"


def normalize_module_name(name: str) -> str:
    """Map ansible.builtin.copy and friends to their short names."""
    for prefix in BUILTIN_COLLECTIONS:
        if name.startswith(prefix):
            return name[len(prefix):]
    return name


class PlaybookParser:
    """
    Parse YAML playbooks into Play and Task objects.

    Rejects keywords and modules Minible cannot run, so a playbook fails
    before any host is touched rather than halfway through.
    """

    def __init__(self, playbook_path: Union[str, Path]):
        self.playbook_path = Path(playbook_path)
        self.plays: List[Play] = []
        self._base_dir = self.playbook_path.parent

    def parse(self) -> List[Play]:
        """
        Parse the playbook file.

        Raises:
            ParseError: If the playbook has syntax or structural errors
            UnsupportedFeatureError: If it uses an unsupported keyword or module
        """
        if not self.playbook_path.exists():
            raise ParseError(
                f"Playbook not found: {self.playbook_path}",
                file_path=str(self.playbook_path),
            )

        try:
            content = self.playbook_path.read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as e:
            raise ParseError(f"Cannot read playbook: {e}", file_path=str(self.playbook_path))
        return self.parse_string(content)

    def parse_string(self, content: str) -> List[Play]:
        """Parse playbook YAML held in memory."""
        try:
            documents = list(yaml.safe_load_all(content))
        except yaml.YAMLError as e:
            line = None
            mark = getattr(e, 'problem_mark', None)
            if mark is not None:
                line = mark.line + 1
            raise ParseError(f"YAML syntax error: {e}", file_path=str(self.playbook_path), line=line)

        all_plays: List[Any] = []
        for doc in documents:
            if doc is None:
                continue
            if isinstance(doc, list):
                all_plays.extend(doc)
            elif isinstance(doc, dict):
                all_plays.append(doc)
            else:
                self._error(f"A playbook must be a list of plays, got {type(doc).__name__}")

        for play_data in all_plays:
            if not isinstance(play_data, dict):
                self._error(f"Each play must be a mapping, got {type(play_data).__name__}")
            self.plays.append(self._parse_play(play_data))

        return self.plays

    def _parse_play(self, data: Dict[str, Any]) -> Play:
        self._reject_unsupported(data, "plays")
        for key in PLAY_TRANSPORT_KEYS:
            if key in data:
                raise UnsupportedFeatureError(
                    f"'{key}' in plays",
                    suggestion="Set ansible_connection / ansible_user for the hosts in the inventory",
                )
        unknown = [key for key in data if key not in PLAY_KEYWORDS]
        if unknown:
            self._error(f"Unknown play keywords: {', '.join(map(str, unknown))}")

        if 'hosts' not in data or data['hosts'] in (None, ''):
            self._error("Play missing required 'hosts' field")

        hosts = data['hosts']
        if isinstance(hosts, list):
            hosts = ','.join(str(h) for h in hosts)

        play = Play(
            name=str(data.get('name') or hosts),
            hosts=str(hosts),
            gather_facts=bool(data.get('gather_facts', False)),
            environment=self._ensure_dict(data.get('environment'), 'environment'),
            tags=self._ensure_list(data.get('tags')),
            become=bool(data.get('become', False)),
            become_user=str(data.get('become_user') or 'root'),
            become_method=str(data.get('become_method') or 'sudo'),
            any_errors_fatal=bool(data.get('any_errors_fatal', False)),
        )

        play.vars = dict(self._ensure_dict(data.get('vars'), 'vars'))

        play.vars_files = [str(f) for f in self._ensure_list(data.get('vars_files'))]
        for vars_file in play.vars_files:
            play.vars.update(self._load_vars_file(vars_file))

        for section in ('pre_tasks', 'tasks', 'post_tasks'):
            for task_data in self._ensure_list(data.get(section)):
                task = self._parse_task(task_data)
                if play.tags:
                    task.tags = _merge_tags(task.tags, play.tags)
                play.tasks.append(task)

        for handler_data in self._ensure_list(data.get('handlers')):
            handler = self._parse_task(handler_data)
            play.handlers.append(handler)

        return play

    def _load_vars_file(self, vars_file: str) -> Dict[str, Any]:
        vars_path = self._base_dir / vars_file
        if not vars_path.exists():
            self._error(f"vars_file not found: {vars_file}")
        try:
            vars_data = yaml.safe_load(vars_path.read_text(encoding='utf-8')) or {}
        except (OSError, UnicodeDecodeError) as e:
            raise ParseError(f"Cannot read vars_file: {e}", file_path=str(vars_path))
        except yaml.YAMLError as e:
            raise ParseError(f"YAML syntax error: {e}", file_path=str(vars_path))
        if not isinstance(vars_data, dict):
            raise ParseError("vars_file must contain a mapping", file_path=str(vars_path))
        return vars_data

    def _parse_task(self, data: Any) -> Task:
        """Parse a single task from YAML data."""
        if not isinstance(data, dict):
            self._error(f"Each task must be a mapping, got {type(data).__name__}")

        self._reject_unsupported(data, "tasks")

        candidates = [key for key in data if key not in TASK_KEYWORDS]
        if not candidates:
            self._error(f"Task has no module: {list(data.keys())}")
        if len(candidates) > 1:
            self._error(f"Task has more than one module or unknown keywords: {candidates}")

        raw_module = candidates[0]
        module_name = normalize_module_name(raw_module)
        self._check_module(raw_module, module_name)

        args = self._normalize_args(module_name, data[raw_module])
        if 'args' in data:
            args.update(self._ensure_dict(data['args'], 'args'))

        loop = None
        for loop_key in ('loop', 'with_items', 'with_list'):
            if loop_key in data:
                loop = data[loop_key]
                break

        loop_var = "item"
        loop_control = data.get('loop_control')
        if isinstance(loop_control, dict):
            loop_var = loop_control.get('loop_var', 'item')

        return Task(
            name=str(data.get('name') or module_name),
            module=module_name,
            args=args,
            register=data.get('register'),
            when=self._join_conditions(data.get('when')),
            loop=loop,
            loop_var=loop_var,
            retry=self._parse_retry(data),
            ignore_errors=bool(data.get('ignore_errors', False)),
            changed_when=self._join_conditions(data.get('changed_when')),
            failed_when=self._join_conditions(data.get('failed_when')),
            environment=self._ensure_dict(data.get('environment'), 'environment'),
            tags=[str(t) for t in self._ensure_list(data.get('tags'))],
            become=data.get('become'),
            become_user=data.get('become_user'),
            become_method=data.get('become_method'),
            notify=[str(n) for n in self._ensure_list(data.get('notify'))],
            listen=[str(n) for n in self._ensure_list(data.get('listen'))],
            vars=self._ensure_dict(data.get('vars'), 'vars'),
        )

    def _parse_retry(self, data: Dict[str, Any]) -> Optional[RetryPolicy]:
        """A retry policy exists when 'until' or 'retries' is given."""
        if 'until' not in data and 'retries' not in data:
            return None

        try:
            retries = int(data.get('retries', DEFAULT_RETRIES))
            delay = float(data.get('delay', DEFAULT_DELAY))
        except (TypeError, ValueError):
            self._error("'retries' must be an integer and 'delay' a number")

        if retries < 0 or delay < 0:
            self._error("'retries' and 'delay' cannot be negative")

        until = self._join_conditions(data.get('until'))
        return RetryPolicy(retries=retries, delay=delay, until=until)

    def _check_module(self, raw_name: str, module_name: str) -> None:
        # Imported here: the module registry imports the engine
        from minible.modules.base import get_module, list_modules

        if get_module(module_name) is None:
            raise UnsupportedFeatureError(
                f"Module '{raw_name}' is not supported",
                suggestion=f"Supported modules: {', '.join(sorted(list_modules()))}",
            )

    def _reject_unsupported(self, data: Dict[str, Any], where: str) -> None:
        for key in UNSUPPORTED_KEYS:
            if key in data:
                raise UnsupportedFeatureError(
                    f"'{key}' in {where}",
                    suggestion=f"Remove '{key}' or run this playbook with Ansible",
                )

    def _normalize_args(self, module_name: str, args: Any) -> Dict[str, Any]:
        """Normalize module arguments to a dictionary."""
        if args is None:
            return {}

        if isinstance(args, dict):
            return dict(args)

        if isinstance(args, str):
            if module_name in FREE_FORM_MODULES:
                return {'_raw_params': args}

            parsed: Dict[str, Any] = {}
            for match in INLINE_ARG_PATTERN.finditer(args):
                key = match.group(1)
                value = match.group(2) or match.group(3) or match.group(4)
                parsed[key] = value
            if not parsed and args.strip():
                self._error(f"Cannot parse arguments for '{module_name}': {args!r}")
            return parsed

        self._error(f"Arguments for '{module_name}' must be a mapping or key=value string")

    def _join_conditions(self, value: Any) -> Optional[Any]:
        """A list of conditions means all of them (Ansible ANDs them)."""
        if value is None:
            return None
        if isinstance(value, bool):
            return value
        if isinstance(value, list):
            return ' and '.join(f"({v})" for v in value) if value else None
        return str(value)

    def _ensure_dict(self, value: Any, keyword: str) -> Dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            self._error(f"'{keyword}' must be a dictionary, got {type(value).__name__}")
        return value

    def _ensure_list(self, value: Any) -> List[Any]:
        if value is None:
            return []
        if isinstance(value, list):
            return value
        return [value]

    def _error(self, message: str) -> None:
        raise ParseError(message, file_path=str(self.playbook_path))


def _merge_tags(own: List[str], inherited: List[str]) -> List[str]:
    merged = list(own)
    for tag in inherited:
        if tag not in merged:
            merged.append(str(tag))
    return merged
