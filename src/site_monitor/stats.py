from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Set

from .events import AverageUpdated, Broadcaster, ProbeReport, TargetUpdated
from .ping import OUTCOME_TYPES, ProbeOutcome, Success

logger = logging.getLogger(__name__)


@dataclass
class TargetState:
    name: str
    outcome: ProbeOutcome
    observed_at: float


@dataclass
class RunningAverage:
    name: str
    sum_ms: float = 0.0
    count: int = 0

    @property
    def average_ms(self) -> Optional[float]:
        if self.count == 0:
            return None
        return self.sum_ms / self.count

    def add(self, rtt_ms: float) -> None:
        self.sum_ms += rtt_ms
        self.count += 1


class Aggregator:
    """Latest outcome per target plus optional running averages.

    Outcomes are folded in arrival order, so a name always reflects the most
    recently delivered outcome, not the most recently dispatched one.
    """

    def __init__(
        self,
        names: Iterable[str] = (),
        broadcaster: Optional[Broadcaster] = None,
        averaging: bool = False,
    ):
        self.broadcaster = broadcaster or Broadcaster()
        self.states: Dict[str, TargetState] = {}
        self.averages: Dict[str, RunningAverage] = {}
        self._registered: Set[str] = set(names)
        self.averaging = False
        if averaging:
            self.set_averaging(True)

    @property
    def registered(self) -> Set[str]:
        return set(self._registered)

    def fold(self, report: ProbeReport) -> None:
        if not isinstance(report, ProbeReport) or not isinstance(
            report.outcome, OUTCOME_TYPES
        ):
            logger.warning("dropping malformed result %r", report)
            return
        if report.name not in self._registered:
            # dispatched before a reload removed the target
            logger.debug("dropping result for unregistered target %r", report.name)
            return

        self.states[report.name] = TargetState(
            report.name, report.outcome, report.observed_at
        )
        self.broadcaster.publish(
            TargetUpdated(report.name, report.outcome, report.observed_at)
        )

        if self.averaging and isinstance(report.outcome, Success):
            avg = self.averages.get(report.name)
            if avg is None:
                avg = self.averages[report.name] = RunningAverage(report.name)
            avg.add(report.outcome.rtt_ms)
            self.broadcaster.publish(
                AverageUpdated(report.name, avg.average_ms, avg.count)
            )

    def set_averaging(self, enabled: bool) -> None:
        """Turning averaging on always starts from zero; it never resumes."""
        self.averages = (
            {name: RunningAverage(name) for name in sorted(self._registered)}
            if enabled
            else {}
        )
        self.averaging = enabled
        logger.info("averaging %s", "enabled" if enabled else "disabled")

    def retain(self, names: Iterable[str]) -> None:
        """Replace the registered names, pruning state for removed targets."""
        self._registered = set(names)
        for name in list(self.states):
            if name not in self._registered:
                del self.states[name]
        for name in list(self.averages):
            if name not in self._registered:
                del self.averages[name]

    async def consume(self, results: "asyncio.Queue[ProbeReport]") -> None:
        """Fold reports from the result stream until cancelled."""
        while True:
            report = await results.get()
            try:
                self.fold(report)
            finally:
                results.task_done()
