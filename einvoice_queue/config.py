import os
from dataclasses import dataclass
from typing import Dict, Mapping

DB_FILE = os.environ.get("EINVOICE_QUEUE_DB", "einvoice_queue.db")

DEFAULT_CONFIG = {
    "concurrency": "3",
    "poll_interval_seconds": "5",
    "health_check_interval_seconds": "30",
    "max_processing_time_seconds": "600",
    "grace_period_seconds": "5",
    "cancel_check_interval_seconds": "1",
    "dead_letter_enabled": "true",
    "retention_days": "7",
    "log_level": "INFO",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _as_bool(value: str) -> bool:
    v = str(value).strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ValueError(f"expected a boolean, got {value!r}")


def _positive_int(value: str) -> int:
    n = int(value)
    if n <= 0:
        raise ValueError(f"expected a positive integer, got {value!r}")
    return n


def _positive_float(value: str) -> float:
    n = float(value)
    if n <= 0:
        raise ValueError(f"expected a positive number, got {value!r}")
    return n


def _log_level(value: str) -> str:
    v = str(value).strip().upper()
    if v not in _LOG_LEVELS:
        raise ValueError(f"log_level must be one of {', '.join(sorted(_LOG_LEVELS))}")
    return v


_PARSERS = {
    "concurrency": _positive_int,
    "poll_interval_seconds": _positive_float,
    "health_check_interval_seconds": _positive_float,
    "max_processing_time_seconds": _positive_float,
    "grace_period_seconds": _positive_float,
    "cancel_check_interval_seconds": _positive_float,
    "dead_letter_enabled": _as_bool,
    "retention_days": _positive_int,
    "log_level": _log_level,
}


def validate_config_value(key: str, value: str) -> str:
    """Check ``value`` for ``key`` and return its normalized string form."""
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    try:
        parsed = _PARSERS[key](value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid value for {key}: {e}")
    if isinstance(parsed, bool):
        return "true" if parsed else "false"
    return str(parsed)


@dataclass
class QueueSettings:
    concurrency: int = 3
    poll_interval: float = 5.0
    health_check_interval: float = 30.0
    max_processing_time: float = 600.0
    grace_period: float = 5.0
    cancel_check_interval: float = 1.0
    dead_letter_enabled: bool = True
    retention_days: int = 7
    log_level: str = "INFO"

    @classmethod
    def from_config(cls, cfg: Mapping[str, str]) -> "QueueSettings":
        merged: Dict[str, str] = dict(DEFAULT_CONFIG)
        merged.update({k: v for k, v in cfg.items() if k in ALLOWED_CONFIG_KEYS})
        p = {k: _PARSERS[k](v) for k, v in merged.items()}
        return cls(
            concurrency=p["concurrency"],
            poll_interval=p["poll_interval_seconds"],
            health_check_interval=p["health_check_interval_seconds"],
            max_processing_time=p["max_processing_time_seconds"],
            grace_period=p["grace_period_seconds"],
            cancel_check_interval=p["cancel_check_interval_seconds"],
            dead_letter_enabled=p["dead_letter_enabled"],
            retention_days=p["retention_days"],
            log_level=p["log_level"],
        )
