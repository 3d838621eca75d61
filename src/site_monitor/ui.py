from __future__ import annotations

import time
from datetime import datetime
from typing import Optional

from rich import box
from rich.table import Table

from . import config
from .events import ConfigRejected, ConsumerEvent, ReloadFailed
from .ping import Success, Timeout, TransportError
from .scheduler import State


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.0f}s"
    elif seconds < 3600:
        return f"{seconds / 60:.1f}m"
    elif seconds < 86400:
        return f"{seconds / 3600:.1f}h"
    else:
        return f"{seconds / 86400:.1f}d"


def classify_latency(outcome) -> str:
    if outcome is None:
        return config.EMOJI_PENDING
    if not isinstance(outcome, Success):
        return config.EMOJI_TIMEOUT
    if outcome.rtt_ms < config.LATENCY_GREEN_MS:
        return config.EMOJI_GREEN
    if outcome.rtt_ms < config.LATENCY_YELLOW_MS:
        return config.EMOJI_YELLOW
    return config.EMOJI_RED


def status_text(outcome) -> str:
    if outcome is None:
        return "Pending..."
    if isinstance(outcome, Success):
        return "OK"
    if isinstance(outcome, Timeout):
        return "TIMEOUT"
    if isinstance(outcome, TransportError):
        return f"ERROR ({outcome.message})"
    return "?"


class Dashboard:
    """Consumer keeping the latest engine notice for the table caption."""

    def __init__(self):
        self.notice: Optional[str] = None

    def __call__(self, event: ConsumerEvent) -> None:
        if isinstance(event, ReloadFailed):
            self.notice = f"Reload failed: {event.reason}"
        elif isinstance(event, ConfigRejected):
            self.notice = f"Rejected {event.field}: {event.reason}"

    def render(self, engine) -> Table:
        return build_table(engine, self.notice)


def build_table(engine, notice: Optional[str] = None) -> Table:
    table = Table(
        title="Site Monitor",
        box=box.MINIMAL_DOUBLE_HEAD,
        expand=True,
        caption_style="bold",
    )
    table.add_column("Site", style="bold")
    table.add_column("Address")
    table.add_column("Status")
    table.add_column("RTT (ms)")
    table.add_column("Latency")
    table.add_column("Avg (ms)")
    table.add_column("Samples")
    table.add_column("Last Seen")

    aggregator = engine.aggregator
    now = time.time()
    for name, target in engine.targets.items():
        state = aggregator.states.get(name)
        outcome = state.outcome if state else None
        rtt_display = f"{outcome.rtt_ms:.1f}" if isinstance(outcome, Success) else "-"
        avg = aggregator.averages.get(name)
        if avg is not None and avg.average_ms is not None:
            avg_display, samples = f"{avg.average_ms:.1f}", str(avg.count)
        else:
            avg_display, samples = "-", "0" if aggregator.averaging else "-"
        seen = format_duration(now - state.observed_at) + " ago" if state else "-"
        table.add_row(
            name,
            str(target.address),
            status_text(outcome),
            rtt_display,
            classify_latency(outcome),
            avg_display,
            samples,
            seen,
        )

    scheduler = engine.scheduler
    rc = engine.config.snapshot()
    countdown = (
        f"{max(scheduler.remaining, 0)}s" if scheduler.state is State.WAITING else "-"
    )
    last = (
        datetime.fromtimestamp(scheduler.last_fired_at).strftime(config.LOG_TIME_FORMAT)
        if scheduler.last_fired_at
        else "never"
    )
    caption = (
        f"Next refresh in: {countdown} (every {rc.refresh_interval}s) | "
        f"timeout {rc.timeout}s | payload {rc.payload_size.name.lower()} "
        f"({rc.payload_size.nbytes} B) | averaging "
        f"{'on' if aggregator.averaging else 'off'}\n"
        f"Last refresh: {last} | in flight: {scheduler.inflight}"
    )
    if notice:
        caption += f"\n{notice}"
    table.caption = caption
    return table
