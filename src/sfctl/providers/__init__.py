"""Provider interfaces for sfctl."""
from __future__ import annotations

from .drush import COMMAND_NOT_FOUND, DelegateBackend, DrushProvider, render_options

__all__ = [
    "COMMAND_NOT_FOUND",
    "DelegateBackend",
    "DrushProvider",
    "render_options",
]
