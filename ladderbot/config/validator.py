"""
Safety review of a loaded Settings object.

Settings._validate() already rejects values that cannot work. The checks here
flag settings that load fine but are unsafe or contradict each other, e.g. a
stop-loss that triggers before the ladder is fully filled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger("ladderbot")

# Taker fee on both legs, in percent
ROUND_TRIP_FEE_PERCENT = Decimal("0.1")


class ValidationSeverity(Enum):
    ERROR = auto()    # startup is refused
    WARNING = auto()
    INFO = auto()


@dataclass
class ValidationIssue:
    field: str
    message: str
    severity: ValidationSeverity
    value: Any = None
    suggestion: Optional[str] = None

    def describe(self) -> str:
        if self.suggestion:
            return f"{self.message} (suggestion: {self.suggestion})"
        return self.message


@dataclass
class ValidationResult:
    valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)

    def _of(self, severity: ValidationSeverity) -> List[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity is severity]

    def get_errors(self) -> List[ValidationIssue]:
        return self._of(ValidationSeverity.ERROR)

    def get_warnings(self) -> List[ValidationIssue]:
        return self._of(ValidationSeverity.WARNING)

    def has_errors(self) -> bool:
        return bool(self.get_errors())

    def has_warnings(self) -> bool:
        return bool(self.get_warnings())


Check = Callable[[Any], List[ValidationIssue]]


def _error(name: str, message: str, value: Any = None, suggestion: Optional[str] = None) -> ValidationIssue:
    return ValidationIssue(name, message, ValidationSeverity.ERROR, value, suggestion)


def _warning(name: str, message: str, value: Any = None, suggestion: Optional[str] = None) -> ValidationIssue:
    return ValidationIssue(name, message, ValidationSeverity.WARNING, value, suggestion)


class ConfigValidator:
    """
    Runs the built-in checks in a fixed order, then any registered ones.

    Usage:
        result = ConfigValidator().validate(cfg)
        if not result.valid:
            ...
    """

    # Inclusive bounds
    BOUNDS: Dict[str, Tuple[float, float]] = {
        "leverage": (1, 50),
        "rung_count": (1, 50),
        "max_move_percent": (0, 50),
        "increment_percent": (0, 200),
        "take_profit_percent": (0.01, 50),
        "stop_loss_percent": (0.1, 50),
        "poll_interval_sec": (1, 300),
        "no_fill_timeout_sec": (60, 86400),
        "order_delay_sec": (0, 10),
        "http_timeout": (1, 60),
        "reconnect_max_attempts": (1, 100),
        "heartbeat_interval_sec": (5, 300),
    }

    REQUIRED = ("symbol", "ws_url", "rest_url")
    MAX_SAFE_LEVERAGE = 20

    def __init__(self) -> None:
        self._extra: List[Check] = []

    def register_validator(self, check: Check) -> None:
        self._extra.append(check)

    def validate(self, cfg) -> ValidationResult:
        checks: List[Check] = [
            self._check_required,
            self._check_bounds,
            self._check_stop_loss,
            self._check_take_profit,
            self._check_trailing,
            self._check_sizing,
            self._check_credentials,
            self._check_shutdown,
            *self._extra,
        ]
        issues: List[ValidationIssue] = []
        for check in checks:
            issues.extend(check(cfg) or [])
        valid = not any(issue.severity is ValidationSeverity.ERROR for issue in issues)
        return ValidationResult(valid=valid, issues=issues)

    def _check_required(self, cfg) -> List[ValidationIssue]:
        return [
            _error(name, f"Required field '{name}' is missing or empty", getattr(cfg, name, None))
            for name in self.REQUIRED
            if not str(getattr(cfg, name, "") or "").strip()
        ]

    def _check_bounds(self, cfg) -> List[ValidationIssue]:
        issues = []
        for name, (low, high) in self.BOUNDS.items():
            raw = getattr(cfg, name, None)
            if raw is None:
                continue
            value = float(raw)
            if low <= value <= high:
                continue
            if value < low:
                issues.append(_error(name, f"'{name}' = {value} is below {low}", value, f"Use at least {low}"))
            else:
                issues.append(_error(name, f"'{name}' = {value} is above {high}", value, f"Use at most {high}"))
        return issues

    def _check_stop_loss(self, cfg) -> List[ValidationIssue]:
        stop = getattr(cfg, "stop_loss_percent", None)
        move = getattr(cfg, "max_move_percent", None)
        if stop is None or move is None or stop >= move:
            return []
        # The averaged entry sits inside the ladder, so the stop can fire before the last rung fills.
        return [_warning(
            "stop_loss_percent",
            f"Stop-loss ({stop}%) is within the ladder range ({move}%)",
            stop,
            "Set stop_loss_percent above max_move_percent",
        )]

    def _check_take_profit(self, cfg) -> List[ValidationIssue]:
        target = getattr(cfg, "take_profit_percent", None)
        if target is None or target > ROUND_TRIP_FEE_PERCENT:
            return []
        return [_warning(
            "take_profit_percent",
            f"Take-profit ({target}%) does not cover round-trip fees (~{ROUND_TRIP_FEE_PERCENT}%)",
            target,
        )]

    def _check_trailing(self, cfg) -> List[ValidationIssue]:
        if not getattr(cfg, "trailing_enabled", False):
            return []
        issues = []
        activation = cfg.trailing_activation_percent
        distance = cfg.trailing_distance_percent
        target = getattr(cfg, "take_profit_percent", None)
        if target is not None and activation >= target:
            issues.append(_warning(
                "trailing_activation_percent",
                f"Trailing activation ({activation}%) is not below take-profit ({target}%); the trailing stop never arms",
                activation,
            ))
        if distance >= activation:
            issues.append(_warning(
                "trailing_distance_percent",
                f"Trailing distance ({distance}%) >= activation ({activation}%) can close at a loss",
                distance,
            ))
        return issues

    def _check_sizing(self, cfg) -> List[ValidationIssue]:
        issues = []
        leverage = getattr(cfg, "leverage", 1)
        if leverage > self.MAX_SAFE_LEVERAGE:
            issues.append(_warning(
                "leverage", f"High leverage ({leverage}x) increases liquidation risk", leverage,
                "Consider using lower leverage for safety",
            ))
        increment = getattr(cfg, "increment_percent", 0)
        if getattr(cfg, "rung_count", 1) > 1 and increment > 100:
            issues.append(_warning(
                "increment_percent",
                f"Rung amounts more than double each step ({increment}%); the last rung dominates exposure",
                increment,
            ))
        return issues

    def _check_credentials(self, cfg) -> List[ValidationIssue]:
        if getattr(cfg, "api_key", None) and getattr(cfg, "api_secret", None):
            return []
        return [_error(
            "api_key",
            "No authentication configured (api_key and api_secret)",
            suggestion="Set LB_API_KEY and LB_API_SECRET",
        )]

    def _check_shutdown(self, cfg) -> List[ValidationIssue]:
        if getattr(cfg, "close_on_stop", True):
            return []
        return [ValidationIssue("close_on_stop", "Positions stay open after shutdown", ValidationSeverity.INFO)]


def validate_config(cfg) -> ValidationResult:
    return ConfigValidator().validate(cfg)


def validate_and_log(cfg, logger_instance=None) -> bool:
    """Validate ``cfg``, log every error and warning, and return whether startup may proceed."""
    out = logger_instance or logger
    result = validate_config(cfg)

    errors = result.get_errors()
    for issue in errors:
        out.error(f"CONFIG ERROR: {issue.describe()}")
    for issue in result.get_warnings():
        out.warning(f"CONFIG WARNING: {issue.describe()}")

    if result.valid:
        out.info("Configuration validation passed")
    else:
        out.error(f"Configuration validation failed with {len(errors)} error(s)")
    return result.valid
