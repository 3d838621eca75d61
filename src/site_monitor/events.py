from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, FrozenSet, List, Optional, Union

from .ping import ProbeOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeReport:
    """One item on the result stream."""

    name: str
    outcome: ProbeOutcome
    observed_at: float


# Consumer events


@dataclass(frozen=True)
class TargetUpdated:
    name: str
    outcome: ProbeOutcome
    observed_at: float


@dataclass(frozen=True)
class AverageUpdated:
    name: str
    average_ms: Optional[float]
    sample_count: int


@dataclass(frozen=True)
class ReloadFailed:
    reason: str
    observed_at: float


@dataclass(frozen=True)
class TargetsReplaced:
    """A reload succeeded; ``names`` is the new registered set."""

    names: FrozenSet[str]
    observed_at: float


@dataclass(frozen=True)
class ConfigRejected:
    field: str
    value: object
    reason: str
    observed_at: float


ConsumerEvent = Union[
    TargetUpdated, AverageUpdated, ReloadFailed, TargetsReplaced, ConfigRejected
]
Consumer = Callable[[ConsumerEvent], None]


class Broadcaster:
    """Fans consumer events out to every subscribed callback."""

    def __init__(self):
        self._consumers: List[Consumer] = []

    def subscribe(self, consumer: Consumer) -> None:
        self._consumers.append(consumer)

    def __len__(self) -> int:
        return len(self._consumers)

    def publish(self, event: ConsumerEvent) -> None:
        for consumer in list(self._consumers):
            try:
                consumer(event)
            except Exception:
                logger.exception("consumer %r failed on %r", consumer, event)
