# Copyright (c) 2024 Minible Contributors
# MIT License

"""
Minible Error Classes.

Each exception carries the process exit code PlaybookRunner.run() returns
when it ends a run. Errors raised while a task runs on one host are turned
into that host's failed or unreachable result instead, and only their
message is shown on the host's status line.
"""

from __future__ import annotations

import enum


class ExitCode(enum.IntEnum):
    """Process exit codes, as ansible-playbook uses them."""

    SUCCESS = 0
    GENERIC_ERROR = 1
    HOST_FAILED = 2
    PARSE_ERROR = 3
    UNSUPPORTED_FEATURE = 4
    KEYBOARD_INTERRUPT = 130


class MinibleError(Exception):
    """Base exception; ``details`` is printed on an indented second line."""

    exit_code: int = ExitCode.GENERIC_ERROR

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}\n  {self.details}"
        return self.message


class ParseError(MinibleError):
    """A playbook, vars file or config file that cannot be loaded."""

    exit_code: int = ExitCode.PARSE_ERROR
    kind = "Parse error"

    def __init__(
        self,
        message: str,
        file_path: str | None = None,
        line: int | None = None,
        details: str | None = None,
    ) -> None:
        self.file_path = file_path
        self.line = line
        location = ""
        if file_path:
            location += f" in {file_path}"
        if line:
            location += f" at line {line}"
        super().__init__(f"{self.kind}{location}: {message}", details)


class InventoryError(ParseError):
    """A broken inventory source, or a change to a host after loading."""

    kind = "Inventory error"

    def __init__(
        self,
        message: str,
        file_path: str | None = None,
        line: int | None = None,
        host: str | None = None,
    ) -> None:
        self.host = host
        super().__init__(message, file_path=file_path, line=line, details=f"Host: {host}" if host else None)


class UnsupportedFeatureError(MinibleError):
    """A keyword, module or transport outside the supported subset."""

    exit_code: int = ExitCode.UNSUPPORTED_FEATURE

    def __init__(self, feature: str, suggestion: str | None = None) -> None:
        self.feature = feature
        super().__init__(
            f"Unsupported feature: {feature}",
            f"Suggestion: {suggestion}" if suggestion else None,
        )


class ConnectionError(MinibleError):
    """No session to a host; the host is reported unreachable."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(
        self,
        host: str,
        message: str,
        connection_type: str | None = None,
        address: str | None = None,
    ) -> None:
        self.host = host
        self.connection_type = connection_type
        self.address = address
        via = f" over {connection_type}" if connection_type else ""
        target = f" ({address})" if address and address != host else ""
        super().__init__(f"Failed to connect to {host}{target}{via}: {message}")


class ModuleError(MinibleError):
    """A module that cannot run as configured on a host (bad become method...)."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(self, module: str, host: str, message: str) -> None:
        self.module = module
        self.host = host
        super().__init__(f"{module}: {message}")


class TemplateError(MinibleError):
    """A Jinja2 expression that fails to render; shown on one line."""

    exit_code: int = ExitCode.PARSE_ERROR

    def __init__(self, message: str, template: str | None = None) -> None:
        self.template = template
        if template:
            shown = template if len(template) <= 80 else template[:77] + "..."
            message = f"{message} (in {shown!r})"
        super().__init__(message)


class HostFailedError(MinibleError):
    """Stops a play for every host when one fails under any_errors_fatal."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(self, host: str, task: str, reason: str) -> None:
        self.host = host
        self.task = task
        super().__init__(f"{host} {reason} at task {task!r}; stopping the play on all hosts")
