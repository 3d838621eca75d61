from __future__ import annotations

import os
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, TextIO

from . import config
from .events import (
    ConfigRejected,
    ConsumerEvent,
    ReloadFailed,
    TargetsReplaced,
    TargetUpdated,
)
from .ping import Success, Timeout, TransportError


def describe(outcome) -> str:
    if isinstance(outcome, Success):
        return f"{outcome.rtt_ms:.2f}ms"
    if isinstance(outcome, Timeout):
        return "timeout"
    if isinstance(outcome, TransportError):
        return f"error: {outcome.message}"
    return repr(outcome)


@dataclass
class OutageTrack:
    name: str
    consecutive_failures: int = 0
    first_failure_ts: Optional[float] = None
    last_error: Optional[str] = None
    outage_open: bool = False
    outage_start_ts: Optional[float] = None
    longest_outage_duration: float = 0.0


class OutageLogger:
    """Consumer that appends outages and engine problems to a log file."""

    def __init__(
        self, path: str, threshold: int = config.CONSECUTIVE_FAILURES_FOR_OUTAGE
    ):
        self.path = path
        self.threshold = threshold
        self.tracks: Dict[str, OutageTrack] = {}

    def __call__(self, event: ConsumerEvent) -> None:
        if isinstance(event, TargetUpdated):
            self.record(event)
        elif isinstance(event, ReloadFailed):
            self.log_reload_failed(event.reason, event.observed_at)
        elif isinstance(event, TargetsReplaced):
            self.retain(event.names)
        elif isinstance(event, ConfigRejected):
            self.log_config_rejected(event.field, event.value, event.reason, event.observed_at)

    def _open(self) -> TextIO:
        self._maybe_rotate_log()
        return open(self.path, "a", encoding="utf-8")

    def _write(self, line: str) -> None:
        with self._open() as f:
            f.write(line)

    @staticmethod
    def _fmt(ts: float) -> str:
        return datetime.fromtimestamp(ts).strftime(config.LOG_TIME_FORMAT)

    def record(self, event: TargetUpdated) -> None:
        track = self.tracks.setdefault(event.name, OutageTrack(event.name))
        if isinstance(event.outcome, Success):
            self.maybe_close_outage(track, event.observed_at)
            track.consecutive_failures = 0
            track.first_failure_ts = None
            track.last_error = None
        else:
            if track.consecutive_failures == 0:
                track.first_failure_ts = event.observed_at
            track.consecutive_failures += 1
            track.last_error = describe(event.outcome)
            self.maybe_open_outage(track)

    def retain(self, names) -> None:
        # removed targets drop their track, open outage included
        for name in self.tracks.keys() - set(names):
            del self.tracks[name]

    def log_outage(
        self, name: str, start_ts: float, end_ts: float, missed: int, reason: Optional[str]
    ):
        duration = end_ts - start_ts
        self._write(
            f"{self._fmt(start_ts)} -> {self._fmt(end_ts)} | OUTAGE site={name} "
            f"missed={missed} duration={duration:.1f}s last={reason or '-'}\n"
        )

    def log_longest_outage(self, name: str, duration: float, ts: float):
        self._write(
            f"{self._fmt(ts)} | LONGEST_OUTAGE site={name} duration={duration:.1f}s\n"
        )

    def log_reload_failed(self, reason: str, ts: float):
        self._write(f"{self._fmt(ts)} | RELOAD_FAILED reason={reason}\n")

    def log_config_rejected(self, field: str, value, reason: str, ts: float):
        self._write(
            f"{self._fmt(ts)} | CONFIG_REJECTED {field}={value!r} reason={reason}\n"
        )

    def maybe_open_outage(self, track: OutageTrack):
        if not track.outage_open and track.consecutive_failures >= self.threshold:
            track.outage_open = True
            track.outage_start_ts = track.first_failure_ts

    def maybe_close_outage(self, track: OutageTrack, end_ts: float):
        if not track.outage_open:
            return
        start_ts = track.outage_start_ts or end_ts
        self.log_outage(
            track.name, start_ts, end_ts, track.consecutive_failures, track.last_error
        )
        duration = end_ts - start_ts
        if duration > track.longest_outage_duration:
            track.longest_outage_duration = duration
            self.log_longest_outage(track.name, duration, end_ts)
        track.outage_open = False
        track.outage_start_ts = None

    def _maybe_rotate_log(self):
        # Rotate log if it hasn't been touched for LOG_ROTATE_AFTER_DAYS
        try:
            last_mod_time = os.path.getmtime(self.path)
            if time.time() - last_mod_time > config.LOG_ROTATE_AFTER_DAYS * 24 * 60 * 60:
                new_name = self.path + "." + datetime.fromtimestamp(last_mod_time).strftime("%Y%m%d%H%M%S")
                os.rename(self.path, new_name)
        except FileNotFoundError:
            pass  # file doesn't exist yet, that's ok

    def finalize(self):
        now = time.time()
        for track in self.tracks.values():
            if track.outage_open:
                # log truncated outage on shutdown
                self.log_outage(
                    track.name,
                    track.outage_start_ts or now,
                    now,
                    track.consecutive_failures,
                    track.last_error,
                )
