# Copyright (c) 2024 Minible Contributors
# MIT License

"""
Minible: minimal inventory-driven configuration engine.

Runs Ansible-style playbooks against an Ansible-style inventory over SSH
(asyncssh) or locally, applying idempotent modules in order on every
targeted host and summarising the run in a play recap.

Features:
    - INI/YAML inventories with group variable inheritance
    - Playbooks compiled into tag-filtered execution plans
    - Linear, fork-bounded execution with per-host failure isolation
    - Idempotent package, service, file, copy and uri modules
"""

from __future__ import annotations

from minible.release import __version__, __author__

__all__ = [
    "__version__",
    "__author__",
]
