"""
Configuration package.

Environment loading, YAML overrides and safety validation.
"""

from ladderbot.config.config import Settings
from ladderbot.config.overrides import load_overrides
from ladderbot.config.validator import ConfigValidator, ValidationSeverity, validate_and_log

__all__ = [
    "Settings",
    "load_overrides",
    "ConfigValidator",
    "ValidationSeverity",
    "validate_and_log",
]
