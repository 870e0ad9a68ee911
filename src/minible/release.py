# Copyright (c) 2024 Minible Contributors
# MIT License

"""Minible release metadata."""

from __future__ import annotations

__version__ = "0.1.0"
__author__ = "Minible Contributors"

# Version info tuple for programmatic comparison
VERSION_INFO = (0, 1, 0)
