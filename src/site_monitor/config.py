from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Union

# Target list (JSON object: name -> IP literal)
SITES_FILE = "sites.json"

# Round settings
REFRESH_INTERVAL_SECONDS = 30  # countdown between rounds
PING_TIMEOUT_SECONDS = 4  # fail if no reply within this time
TICK_SECONDS = 1.0  # one countdown step

# Latency classification thresholds (ms)
LATENCY_GREEN_MS = 60
LATENCY_YELLOW_MS = 150

# Outage detection
CONSECUTIVE_FAILURES_FOR_OUTAGE = 3

# Logging
LOG_FILE = "site_monitor.log"
LOG_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_ROTATE_AFTER_DAYS = 90

# Table refresh rate (seconds)
UI_REFRESH_INTERVAL = 0.5

# Emoji/status mapping
EMOJI_GREEN = "✅"
EMOJI_YELLOW = "⚠️"
EMOJI_RED = "🔴"
EMOJI_TIMEOUT = "❌"
EMOJI_PENDING = "…"


class PayloadSize(Enum):
    """Fixed ICMP payload size classes, in bytes."""

    TINY = 16
    SMALL = 64
    MEDIUM = 256
    LARGE = 512
    HUGE = 1024
    GIANT = 1472  # fills a 1500 byte ethernet frame over IPv4

    @property
    def nbytes(self) -> int:
        return self.value

    @classmethod
    def parse(cls, value: Union[str, "PayloadSize"]) -> "PayloadSize":
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            names = ", ".join(m.name.lower() for m in cls)
            raise ConfigError(
                f"unknown payload size {value!r} (expected one of: {names})"
            ) from None


DEFAULT_PAYLOAD_SIZE = PayloadSize.MEDIUM


class ConfigError(ValueError):
    """Raised when a configuration value is rejected."""


@dataclass(frozen=True)
class RoundConfig:
    timeout: int = PING_TIMEOUT_SECONDS
    payload_size: PayloadSize = DEFAULT_PAYLOAD_SIZE
    refresh_interval: int = REFRESH_INTERVAL_SECONDS


FIELDS = ("timeout", "payload_size", "refresh_interval")


def parse_positive_seconds(field_name: str, value) -> int:
    """Accept positive whole seconds given as int or numeric string."""
    if isinstance(value, bool):
        raise ConfigError(f"{field_name}: expected seconds, got {value!r}")
    if isinstance(value, int):
        seconds = value
    else:
        try:
            seconds = int(str(value).strip())
        except ValueError:
            raise ConfigError(
                f"{field_name}: cannot parse {value!r} as whole seconds"
            ) from None
    if seconds <= 0:
        raise ConfigError(f"{field_name}: must be positive, got {seconds}")
    return seconds


def validate(field_name: str, value):
    if field_name == "payload_size":
        return PayloadSize.parse(value)
    if field_name in ("timeout", "refresh_interval"):
        return parse_positive_seconds(field_name, value)
    raise ConfigError(f"unknown setting {field_name!r}")


class ConfigPort:
    """Live, mutable round settings.

    Writers go through ``update`` which validates before swapping in a new
    frozen ``RoundConfig``; readers take ``snapshot()`` once per round.
    """

    def __init__(self, initial: RoundConfig | None = None):
        self._lock = threading.Lock()
        self._current = initial or RoundConfig()

    def snapshot(self) -> RoundConfig:
        with self._lock:
            return self._current

    def update(self, field_name: str, value) -> RoundConfig:
        parsed = validate(field_name, value)
        with self._lock:
            self._current = replace(self._current, **{field_name: parsed})
            return self._current

    @classmethod
    def from_values(
        cls,
        timeout=PING_TIMEOUT_SECONDS,
        payload_size=DEFAULT_PAYLOAD_SIZE,
        refresh_interval=REFRESH_INTERVAL_SECONDS,
    ) -> "ConfigPort":
        return cls(
            RoundConfig(
                timeout=validate("timeout", timeout),
                payload_size=validate("payload_size", payload_size),
                refresh_interval=validate("refresh_interval", refresh_interval),
            )
        )
