"""Proposal model component exports."""

from __future__ import annotations

from . import task_modules, utils

__all__ = ["task_modules", "utils"]
