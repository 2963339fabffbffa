"""Core module for Nudge configuration and utilities."""

from src.core.config import Settings, get_settings, settings
from src.core.exceptions import NudgeException, sanitize_error

__all__ = [
    "NudgeException",
    "Settings",
    "get_settings",
    "sanitize_error",
    "settings",
]
