"""
Minible Run Configuration

Settings for a playbook run, loaded from a YAML file and MINIBLE_* environment
variables, plus the logging setup shared by every entry point.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from minible.engine.errors import ParseError


ENV_PREFIX = "MINIBLE_"

LOG_FORMAT = "%(levelname)s %(name)s - %(message)s"


@dataclass
class RunConfig:
    """
    Configuration for a playbook run.

    Attributes:
        forks: Maximum number of hosts a task runs on concurrently
        limit: Extra host pattern intersected with every play's selector
        tags: Only run tasks carrying one of these tags
        skip_tags: Never run tasks carrying one of these tags
        check_mode: Report what would change without changing it
        verbosity: Console verbosity (0-3)
        json_output: Print a JSON document instead of the console stream
        extra_vars: Variables with the highest precedence
        connect_timeout: Seconds to wait for an SSH session
        host_key_checking: Verify SSH host keys against known_hosts
        log_level: Level for the logging module
    """

    forks: int = 5
    limit: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    skip_tags: List[str] = field(default_factory=list)
    check_mode: bool = False
    verbosity: int = 0
    json_output: bool = False
    extra_vars: Dict[str, Any] = field(default_factory=dict)
    connect_timeout: int = 30
    host_key_checking: bool = True
    log_level: str = "WARNING"

    def __post_init__(self) -> None:
        if self.forks < 1:
            raise ValueError(f"forks must be at least 1, got {self.forks}")

    def replace(self, **overrides: Any) -> "RunConfig":
        """Return a copy with the given fields replaced (None values ignored)."""
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        for key, value in overrides.items():
            if key not in values:
                raise TypeError(f"Unknown configuration key: {key}")
            if value is not None:
                values[key] = value
        return RunConfig(**values)


def load_config(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> RunConfig:
    """
    Build a RunConfig.

    Precedence, lowest first: dataclass defaults, the YAML file at ``path``
    (its ``defaults`` section, or the top-level mapping), ``MINIBLE_*``
    environment variables, then keyword ``overrides``.
    """
    values: Dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        if config_path.exists():
            values.update(_read_config_file(config_path))

    values.update(_read_environment(os.environ if environ is None else environ))

    try:
        config = RunConfig(**values)
    except (TypeError, ValueError) as e:
        raise ParseError(f"Invalid configuration: {e}", file_path=str(path) if path else None)

    return config.replace(**overrides)


def _read_config_file(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, UnicodeDecodeError) as e:
        raise ParseError(f"Cannot read config file: {e}", file_path=str(path))
    except yaml.YAMLError as e:
        raise ParseError(f"YAML syntax error: {e}", file_path=str(path))

    if not isinstance(data, dict):
        raise ParseError("Configuration must be a mapping", file_path=str(path))

    section = data.get("defaults", data)
    known = {f.name for f in fields(RunConfig)}
    unknown = set(section) - known
    if unknown:
        raise ParseError(
            f"Unknown configuration keys: {', '.join(sorted(unknown))}",
            file_path=str(path),
        )
    return dict(section)


def _read_environment(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Pick up MINIBLE_<FIELD> variables, converted to the field's type."""
    values: Dict[str, Any] = {}
    for f in fields(RunConfig):
        raw = environ.get(ENV_PREFIX + f.name.upper())
        if raw is None:
            continue
        values[f.name] = _coerce(f.name, raw)
    return values


def _coerce(name: str, raw: str) -> Any:
    if name in ("forks", "verbosity", "connect_timeout"):
        try:
            return int(raw)
        except ValueError:
            raise ParseError(f"{ENV_PREFIX}{name.upper()} must be an integer, got {raw!r}")
    if name in ("check_mode", "json_output", "host_key_checking"):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if name in ("tags", "skip_tags"):
        return [t.strip() for t in raw.split(",") if t.strip()]
    if name == "extra_vars":
        data = yaml.safe_load(raw)
        if not isinstance(data, dict):
            raise ParseError(f"{ENV_PREFIX}EXTRA_VARS must be a YAML mapping")
        return data
    return raw


def configure_logging(level: str = "WARNING") -> None:
    """Configure the root logger for a run."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format=LOG_FORMAT,
    )
