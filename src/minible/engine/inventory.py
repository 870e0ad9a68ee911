"""
Minible Inventory Manager

Parses INI, YAML and JSON inventories plus host_vars/ and group_vars/
directories into an addressable, frozen set of hosts and groups.
"""

import fnmatch
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

import yaml

from minible.engine.errors import InventoryError


logger = logging.getLogger(__name__)

DEFAULT_SSH_PORT = 22
DEFAULT_INTERPRETER = "/usr/bin/python3"
LOCAL_HOSTNAMES = ("localhost", "127.0.0.1", "::1")
IMPLICIT_GROUPS = ("all", "ungrouped")


@dataclass(frozen=True)
class ConnectionParams:
    """Everything a transport needs to open a session to a host."""

    address: str
    port: int = DEFAULT_SSH_PORT
    user: Optional[str] = None
    private_key_file: Optional[str] = None
    password: Optional[str] = None
    interpreter: str = DEFAULT_INTERPRETER
    connection: str = "ssh"

    @property
    def credential_ref(self) -> Optional[str]:
        """Which credential the session authenticates with (never the secret)."""
        if self.private_key_file:
            return f"key:{self.private_key_file}"
        if self.password:
            return "password"
        return None


class Host:
    """
    A single inventory host.

    Mutable while the inventory is being parsed; frozen by
    InventoryManager.parse() so that it stays fixed for the whole run.
    """

    def __init__(self, name: str, variables: Optional[Dict[str, Any]] = None):
        self.name = name
        self._vars: Dict[str, Any] = dict(variables) if variables else {}
        self._groups: List[str] = []
        self._frozen = False
        self._connection_params: Optional[ConnectionParams] = None

    @property
    def vars(self) -> Mapping[str, Any]:
        """Host-level variables (read-only once frozen)."""
        if self._frozen:
            return MappingProxyType(self._vars)
        return self._vars

    @property
    def groups(self) -> List[str]:
        """Names of the groups this host belongs to directly."""
        return list(self._groups)

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def address(self) -> str:
        """The address to connect to (ansible_host or the name)."""
        return self.connection_params.address

    @property
    def connection_params(self) -> ConnectionParams:
        if self._connection_params is not None:
            return self._connection_params
        return self._build_connection_params(self._vars)

    def add_group(self, group_name: str) -> None:
        """Record membership of a group."""
        self._check_mutable()
        if group_name not in self._groups:
            self._groups.append(group_name)

    def set_variable(self, key: str, value: Any) -> None:
        self._check_mutable()
        self._vars[key] = value

    def get_variable(self, key: str, default: Any = None) -> Any:
        return self._vars.get(key, default)

    def update_variables(self, variables: Mapping[str, Any]) -> None:
        self._check_mutable()
        self._vars.update(variables)

    def freeze(self, effective_vars: Optional[Mapping[str, Any]] = None) -> None:
        """
        Make the host immutable for the rest of the run.

        Args:
            effective_vars: Host vars merged with inherited group vars, used
                to resolve connection parameters set at group level.
        """
        self._connection_params = self._build_connection_params(
            effective_vars if effective_vars is not None else self._vars
        )
        self._frozen = True

    def get_vars(self) -> Dict[str, Any]:
        """Host variables plus the computed per-host ones."""
        result = dict(self._vars)
        result['inventory_hostname'] = self.name
        result['inventory_hostname_short'] = self.name.split('.')[0]
        result['ansible_host'] = self.address
        return result

    def _build_connection_params(self, variables: Mapping[str, Any]) -> ConnectionParams:
        default_connection = 'local' if self.name in LOCAL_HOSTNAMES else 'ssh'
        password = variables.get('ansible_password') or variables.get('ansible_ssh_pass')
        user = variables.get('ansible_user') or variables.get('ansible_ssh_user')
        key_file = variables.get('ansible_ssh_private_key_file')
        port = variables.get('ansible_port', DEFAULT_SSH_PORT)
        try:
            port = int(port)
        except (TypeError, ValueError):
            raise InventoryError(f"ansible_port for host {self.name!r} must be an integer, got {port!r}")
        return ConnectionParams(
            address=str(variables.get('ansible_host', self.name)),
            port=port,
            user=str(user) if user else None,
            private_key_file=str(key_file) if key_file else None,
            password=str(password) if password else None,
            interpreter=str(variables.get('ansible_python_interpreter', DEFAULT_INTERPRETER)),
            connection=str(variables.get('ansible_connection', default_connection)),
        )

    def _check_mutable(self) -> None:
        if self._frozen:
            raise InventoryError(f"Host {self.name!r} is frozen for this run")

    def __repr__(self) -> str:
        return f"Host({self.name!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Host):
            return NotImplemented
        return self.name == other.name

    def __hash__(self) -> int:
        return hash(self.name)


class Group:
    """A named set of hosts, with child groups and inheritable variables."""

    def __init__(self, name: str, variables: Optional[Dict[str, Any]] = None):
        self.name = name
        self.vars: Dict[str, Any] = dict(variables) if variables else {}
        self._hosts: List[str] = []
        self._children: List[str] = []
        self._parents: List[str] = []

    @property
    def hosts(self) -> List[str]:
        """Host names directly in this group."""
        return list(self._hosts)

    @property
    def children(self) -> List[str]:
        return list(self._children)

    @property
    def parents(self) -> List[str]:
        return list(self._parents)

    def add_host(self, host_name: str) -> None:
        if host_name not in self._hosts:
            self._hosts.append(host_name)

    def add_child(self, group_name: str) -> None:
        if group_name == self.name:
            raise InventoryError(f"Group {self.name!r} cannot be its own child")
        if group_name not in self._children:
            self._children.append(group_name)

    def add_parent(self, group_name: str) -> None:
        if group_name not in self._parents:
            self._parents.append(group_name)

    def set_variable(self, key: str, value: Any) -> None:
        self.vars[key] = value

    def __repr__(self) -> str:
        return f"Group({self.name!r}, hosts={len(self._hosts)})"


class InventoryManager:
    """
    Parses inventory sources and resolves host patterns.

    Supports:
    - INI format inventory files
    - YAML (and JSON) format inventory files
    - host_vars/ and group_vars/ directories
    - Host patterns: unions, &intersections, !exclusions, wildcards
    """

    # Host range expansion: web[01:10].example.com
    RANGE_PATTERN = re.compile(r'\[(\d+):(\d+)\]')
    # INI variable assignment: key=value
    VAR_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')

    def __init__(self):
        self.hosts: Dict[str, Host] = {}
        self.groups: Dict[str, Group] = {name: Group(name) for name in IMPLICIT_GROUPS}
        self._inventory_dir: Optional[Path] = None
        self._frozen = False

    def parse(self, source: Union[str, Path]) -> 'InventoryManager':
        """
        Parse an inventory file or directory and freeze the result.

        Returns:
            self for chaining
        """
        if self._frozen:
            raise InventoryError("Inventory is already loaded for this run")

        source_path = Path(source)
        if not source_path.exists():
            raise InventoryError(f"Inventory path does not exist: {source_path}")

        if source_path.is_file():
            self._inventory_dir = source_path.parent
            self._parse_file(source_path)
        elif source_path.is_dir():
            self._inventory_dir = source_path
            self._parse_directory(source_path)
        else:
            raise InventoryError(f"Invalid inventory source: {source_path}")

        self._load_vars_directories(self._inventory_dir)
        self._finalize()
        return self

    def parse_string(self, content: str, fmt: str = "ini") -> 'InventoryManager':
        """Parse inventory content held in memory (``fmt`` is 'ini' or 'yaml')."""
        if self._frozen:
            raise InventoryError("Inventory is already loaded for this run")
        if fmt == "yaml":
            self._parse_yaml_string(content)
        elif fmt == "ini":
            self._parse_ini_string(content)
        else:
            raise InventoryError(f"Unknown inventory format: {fmt}")
        self._finalize()
        return self

    def get_hosts(self, pattern: str = "all") -> List[Host]:
        """
        Get the hosts matching a pattern, in inventory order.

        Supported patterns:
        - "all" or "*"               every host
        - "group" / "host"           a group (with children) or one host
        - "web*"                     fnmatch wildcard over host and group names
        - "a,b" or "a:b"             union
        - "a:&b"                     intersection
        - "a:!b"                     exclusion

        Unknown names match nothing.
        """
        if pattern is None:
            pattern = "all"
        if isinstance(pattern, (list, tuple)):
            pattern = ",".join(str(p) for p in pattern)

        terms = self._split_pattern(str(pattern))
        if not terms:
            return []

        selected: Set[str] = set()
        positive_seen = False
        for term in terms:
            if term.startswith('&') or term.startswith('!'):
                continue
            selected |= self._match_term(term)
            positive_seen = True

        if not positive_seen:
            selected = set(self.hosts)

        for term in terms:
            if term.startswith('&'):
                selected &= self._match_term(term[1:])
            elif term.startswith('!'):
                selected -= self._match_term(term[1:])

        return [host for name, host in self.hosts.items() if name in selected]

    def _split_pattern(self, pattern: str) -> List[str]:
        """
        Split a pattern on commas, then on colons. Colon-separated segments
        that together name a known host or group stay joined, longest name
        first, so IPv6 hosts such as ``::1`` match.
        """
        terms: List[str] = []
        for piece in pattern.split(','):
            segments = piece.strip().split(':')
            start = 0
            while start < len(segments):
                end = len(segments)
                while end > start + 1:
                    name = ':'.join(segments[start:end]).strip().lstrip('&!')
                    if name in self.hosts or name in self.groups:
                        break
                    end -= 1
                term = ':'.join(segments[start:end]).strip()
                if term:
                    terms.append(term)
                start = end
        return terms

    def _match_term(self, term: str) -> Set[str]:
        if term in ('all', '*'):
            return set(self.hosts)
        if term in self.groups:
            return self._group_host_names(term)
        if term in self.hosts:
            return {term}
        if any(ch in term for ch in '*?['):
            matched: Set[str] = set()
            for name in self.hosts:
                if fnmatch.fnmatchcase(name, term):
                    matched.add(name)
            for name in self.groups:
                if fnmatch.fnmatchcase(name, term):
                    matched |= self._group_host_names(name)
            return matched
        return set()

    def _group_host_names(self, group_name: str, _seen: Optional[Set[str]] = None) -> Set[str]:
        """All host names in a group, including child groups."""
        seen = _seen if _seen is not None else set()
        if group_name in seen or group_name not in self.groups:
            return set()
        seen.add(group_name)

        if group_name == 'all':
            return set(self.hosts)

        group = self.groups[group_name]
        names = {h for h in group.hosts if h in self.hosts}
        for child_name in group.children:
            names |= self._group_host_names(child_name, seen)
        return names

    def get_host_groups(self, host_name: str) -> List[str]:
        """Every group a host belongs to, directly or through a child group."""
        if host_name not in self.hosts:
            return []
        result: List[str] = []
        pending = list(self.hosts[host_name].groups)
        while pending:
            name = pending.pop(0)
            if name in result or name not in self.groups:
                continue
            result.append(name)
            pending.extend(self.groups[name].parents)
        if 'all' not in result:
            result.append('all')
        return result

    def group_depth(self, group_name: str, _seen: Optional[Set[str]] = None) -> int:
        """Distance from 'all'; parents are always shallower than their children."""
        seen = _seen if _seen is not None else set()
        if group_name == 'all' or group_name in seen or group_name not in self.groups:
            return 0
        seen.add(group_name)
        parents = [p for p in self.groups[group_name].parents if p != 'all']
        if not parents:
            return 1
        return 1 + max(self.group_depth(p, set(seen)) for p in parents)

    def get_host_vars(self, host_name: str) -> Dict[str, Any]:
        """
        Variables for a host, merged from its groups and itself.

        Order, lowest precedence first: 'all', other groups by depth then
        name, host vars, computed vars.
        """
        if host_name not in self.hosts:
            return {}

        host = self.hosts[host_name]
        merged_vars: Dict[str, Any] = {}
        for group_name in self._ordered_groups(host_name):
            merged_vars.update(self.groups[group_name].vars)

        merged_vars.update(host.get_vars())
        merged_vars['group_names'] = sorted(
            g for g in self.get_host_groups(host_name) if g not in IMPLICIT_GROUPS
        )
        merged_vars['groups'] = {
            name: [h.name for h in self.get_hosts(name)] for name in self.groups
        }
        return merged_vars

    def _ordered_groups(self, host_name: str) -> List[str]:
        groups = [g for g in self.get_host_groups(host_name) if g != 'all']
        groups.sort(key=lambda g: (self.group_depth(g), g))
        return ['all'] + groups

    def _finalize(self) -> None:
        """Assign implicit groups, then freeze every host."""
        for host_name, host in self.hosts.items():
            self.groups['all'].add_host(host_name)
            explicit = [g for g in host.groups if g not in IMPLICIT_GROUPS]
            if not explicit:
                self.groups['ungrouped'].add_host(host_name)
                host.add_group('ungrouped')

        for host_name, host in self.hosts.items():
            effective: Dict[str, Any] = {}
            for group_name in self._ordered_groups(host_name):
                effective.update(self.groups[group_name].vars)
            effective.update(host.vars)
            host.freeze(effective)

        self._frozen = True
        logger.debug("Loaded inventory with %d hosts in %d groups", len(self.hosts), len(self.groups))

    def _get_or_create_group(self, name: str) -> Group:
        if name not in self.groups:
            self.groups[name] = Group(name)
        return self.groups[name]

    def _get_or_create_host(self, name: str, variables: Optional[Dict[str, Any]] = None) -> Host:
        """Hosts listed in several groups keep one object; later vars win."""
        if name in self.hosts:
            host = self.hosts[name]
            if variables:
                host.update_variables(variables)
        else:
            host = Host(name, variables=variables)
            self.hosts[name] = host
        return host

    def _link_child(self, parent: str, child: str) -> None:
        self._get_or_create_group(parent).add_child(child)
        self._get_or_create_group(child).add_parent(parent)

    def _parse_file(self, path: Path) -> None:
        """Parse one inventory file, detecting its format."""
        try:
            content = path.read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as e:
            raise InventoryError(f"Cannot read inventory file: {e}", file_path=str(path))

        if path.suffix in ('.yml', '.yaml'):
            self._parse_yaml_string(content, path)
        elif path.suffix == '.json':
            try:
                data = json.loads(content)
            except json.JSONDecodeError as e:
                raise InventoryError(f"Invalid JSON: {e}", file_path=str(path))
            self._parse_yaml_data(data, path)
        elif content.lstrip().startswith(('---', 'all:', 'ungrouped:')):
            self._parse_yaml_string(content, path)
        else:
            self._parse_ini_string(content, path)

    def _parse_directory(self, path: Path) -> None:
        """Parse every inventory file in a directory."""
        for item in sorted(path.iterdir()):
            if not item.is_file() or item.name.startswith('.'):
                continue
            if item.suffix in ('.bak', '.orig', '.pyc', '.pyo', '.retry', '.md'):
                continue
            self._parse_file(item)

    def _load_vars_directories(self, base_path: Optional[Path]) -> None:
        """Load group_vars/ and host_vars/ files next to the inventory."""
        if base_path is None:
            return

        group_vars_dir = base_path / 'group_vars'
        if group_vars_dir.is_dir():
            for item in sorted(group_vars_dir.iterdir()):
                group = self._get_or_create_group(item.stem if item.is_file() else item.name)
                for key, value in self._read_vars_source(item).items():
                    group.set_variable(key, value)

        host_vars_dir = base_path / 'host_vars'
        if host_vars_dir.is_dir():
            for item in sorted(host_vars_dir.iterdir()):
                host_name = item.stem if item.is_file() else item.name
                if host_name not in self.hosts:
                    logger.debug("Ignoring host_vars for unknown host %s", host_name)
                    continue
                self.hosts[host_name].update_variables(self._read_vars_source(item))

    def _read_vars_source(self, item: Path) -> Dict[str, Any]:
        """Read a vars file, or every YAML file in a vars directory."""
        files: List[Path] = []
        if item.is_file() and item.suffix in ('.yml', '.yaml', '.json', ''):
            files = [item]
        elif item.is_dir():
            files = sorted(p for p in item.iterdir() if p.suffix in ('.yml', '.yaml', '.json'))

        result: Dict[str, Any] = {}
        for vars_file in files:
            try:
                data = yaml.safe_load(vars_file.read_text(encoding='utf-8')) or {}
            except (OSError, UnicodeDecodeError) as e:
                raise InventoryError(f"Cannot read vars file: {e}", file_path=str(vars_file))
            except yaml.YAMLError as e:
                raise InventoryError(f"Invalid vars file: {e}", file_path=str(vars_file))
            if not isinstance(data, dict):
                raise InventoryError("Vars file must contain a mapping", file_path=str(vars_file))
            result.update(data)
        return result

    def _parse_ini_string(self, content: str, source_path: Optional[Path] = None) -> None:
        """Parse INI format inventory."""
        current_group: Optional[str] = None
        current_section: Optional[str] = None  # 'hosts', 'vars', 'children'
        file_path = str(source_path) if source_path else None

        for line_num, raw_line in enumerate(content.splitlines(), 1):
            line = raw_line.strip()

            if not line or line.startswith('#') or line.startswith(';'):
                continue

            if line.startswith('['):
                if not line.endswith(']'):
                    raise InventoryError(
                        f"Malformed section header: {line}",
                        file_path=file_path,
                        line=line_num,
                    )
                header = line[1:-1].strip()
                group_name, _, suffix = header.partition(':')
                group_name = group_name.strip()
                if not group_name:
                    raise InventoryError("Empty group name", file_path=file_path, line=line_num)
                if suffix not in ('', 'vars', 'children'):
                    raise InventoryError(
                        f"Unknown section type ':{suffix}'",
                        file_path=file_path,
                        line=line_num,
                    )
                current_group = group_name
                current_section = suffix or 'hosts'
                self._get_or_create_group(group_name)
                continue

            if current_section == 'vars':
                key, value = self._parse_variable_line(line)
                if not key:
                    raise InventoryError(
                        f"Expected key=value: {line}",
                        file_path=file_path,
                        line=line_num,
                    )
                self.groups[current_group].set_variable(key, value)

            elif current_section == 'children':
                self._link_child(current_group, line.split()[0])

            else:
                for host in self._parse_host_line(line):
                    if current_group:
                        self.groups[current_group].add_host(host.name)
                        host.add_group(current_group)

    def _parse_host_line(self, line: str) -> List[Host]:
        """Parse one host line, expanding ranges and inline variables."""
        parts = line.split(None, 1)
        host_pattern = parts[0]
        var_string = parts[1] if len(parts) > 1 else ''

        variables: Dict[str, Any] = {}
        for match in self.VAR_PATTERN.finditer(var_string):
            key = match.group(1)
            if match.group(2) is not None:
                value: Any = match.group(2)
            elif match.group(3) is not None:
                value = match.group(3)
            else:
                value = self._convert_value(match.group(4))
            variables[key] = value

        return [
            self._get_or_create_host(name, variables)
            for name in self._expand_host_pattern(host_pattern)
        ]

    def _expand_host_pattern(self, pattern: str) -> List[str]:
        """Expand host patterns like web[01:03].example.com."""
        match = self.RANGE_PATTERN.search(pattern)
        if not match:
            return [pattern]

        start = int(match.group(1))
        end = int(match.group(2))
        if end < start:
            raise InventoryError(f"Invalid host range in {pattern!r}: {start} > {end}")
        width = len(match.group(1))

        results = []
        for i in range(start, end + 1):
            expanded = pattern[:match.start()] + str(i).zfill(width) + pattern[match.end():]
            results.extend(self._expand_host_pattern(expanded))
        return results

    def _parse_variable_line(self, line: str) -> Tuple[str, Any]:
        if '=' not in line:
            return '', None

        key, _, value = line.partition('=')
        key = key.strip()
        value = value.strip()

        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            return key, value[1:-1]

        return key, self._convert_value(value)

    def _convert_value(self, value: str) -> Any:
        """Convert an unquoted INI value to bool, None, int or float where it looks like one."""
        if not isinstance(value, str):
            return value

        lowered = value.lower()
        if lowered in ('true', 'yes'):
            return True
        if lowered in ('false', 'no'):
            return False
        if lowered in ('null', 'none', '~'):
            return None

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    def _parse_yaml_string(self, content: str, source_path: Optional[Path] = None) -> None:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise InventoryError(
                f"YAML syntax error: {e}",
                file_path=str(source_path) if source_path else None,
            )
        if data:
            self._parse_yaml_data(data, source_path)

    def _parse_yaml_data(self, data: Any, source_path: Optional[Path] = None) -> None:
        if not isinstance(data, dict):
            raise InventoryError(
                "YAML inventory must be a mapping of groups",
                file_path=str(source_path) if source_path else None,
            )

        for group_name, group_data in data.items():
            self._parse_yaml_group(str(group_name), group_data or {}, source_path)

    def _parse_yaml_group(self, name: str, data: Any, source_path: Optional[Path]) -> None:
        group = self._get_or_create_group(name)

        if not isinstance(data, dict):
            raise InventoryError(
                f"Group {name!r} must be a mapping",
                file_path=str(source_path) if source_path else None,
            )

        hosts_data = data.get('hosts') or {}
        if isinstance(hosts_data, list):
            hosts_data = {h: {} for h in hosts_data}
        for host_pattern, host_vars in hosts_data.items():
            for host_name in self._expand_host_pattern(str(host_pattern)):
                host = self._get_or_create_host(host_name, dict(host_vars or {}))
                group.add_host(host_name)
                host.add_group(name)

        for key, value in (data.get('vars') or {}).items():
            group.set_variable(key, value)

        for child_name, child_data in (data.get('children') or {}).items():
            self._link_child(name, str(child_name))
            self._parse_yaml_group(str(child_name), child_data or {}, source_path)
