from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Set, Union

from .config import ConfigError, ConfigPort, RoundConfig
from .events import Broadcaster, ConfigRejected, ProbeReport, ReloadFailed, TargetsReplaced
from .ping import TransportError
from .registry import LoadError, Target, TargetRegistry

logger = logging.getLogger(__name__)


class State(Enum):
    IDLE = "idle"
    WAITING = "waiting"
    FIRING = "firing"


# Control loop events


@dataclass(frozen=True)
class Tick:
    pass


@dataclass(frozen=True)
class ManualTrigger:
    pass


@dataclass(frozen=True)
class ReloadTargets:
    pass


@dataclass(frozen=True)
class ConfigChanged:
    field: str
    value: object


@dataclass(frozen=True)
class SetAveraging:
    enabled: Optional[bool] = None  # None flips the current mode


ControlEvent = Union[Tick, ManualTrigger, ReloadTargets, ConfigChanged, SetAveraging]


class Scheduler:
    """Countdown state machine that fans out one probe task per target.

    ``handle`` never awaits a probe: each firing creates tasks and returns, so
    the next countdown starts on time however slow the targets are.
    """

    def __init__(
        self,
        registry: TargetRegistry,
        config_port: ConfigPort,
        prober,
        results: "asyncio.Queue[ProbeReport]",
        targets: Dict[str, Target],
        broadcaster: Optional[Broadcaster] = None,
        on_targets_replaced: Optional[Callable[[Dict[str, Target]], None]] = None,
    ):
        self.registry = registry
        self.config = config_port
        self.prober = prober
        self.results = results
        self.targets = dict(targets)
        self.broadcaster = broadcaster if broadcaster is not None else Broadcaster()
        self.on_targets_replaced = on_targets_replaced
        self.state = State.IDLE
        self.remaining = 0
        self.rounds = 0
        self.last_fired_at: Optional[float] = None
        self._inflight: Set[asyncio.Task] = set()

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def start(self) -> None:
        """Leave IDLE with an immediate first round."""
        if self.state is State.IDLE:
            self.fire()

    def handle(self, event: ControlEvent) -> None:
        if isinstance(event, Tick):
            if self.state is State.IDLE:
                return
            self.remaining -= 1
            if self.remaining <= 0:
                self.fire()
        elif isinstance(event, ManualTrigger):
            self.fire()
        elif isinstance(event, ReloadTargets):
            self.reload()
        elif isinstance(event, ConfigChanged):
            self.change_config(event.field, event.value)
        else:
            logger.warning("scheduler ignoring unexpected event %r", event)

    def fire(self) -> RoundConfig:
        self.state = State.FIRING
        snapshot = self.config.snapshot()
        self.rounds += 1
        self.last_fired_at = time.time()
        logger.debug(
            "round %d: %d targets, timeout=%ss payload=%s",
            self.rounds, len(self.targets), snapshot.timeout,
            snapshot.payload_size.name.lower(),
        )
        for target in self.targets.values():
            self._dispatch(target, snapshot)
        self.remaining = snapshot.refresh_interval
        self.state = State.WAITING
        return snapshot

    def _dispatch(self, target: Target, snapshot: RoundConfig) -> None:
        if self.prober.facility_for(target) is None:
            self._report(
                target, TransportError(f"no IPv{target.version} probing facility")
            )
            return
        task = asyncio.get_running_loop().create_task(
            self._run_probe(target, snapshot), name=f"probe-{target.name}"
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run_probe(self, target: Target, snapshot: RoundConfig) -> None:
        try:
            outcome = await self.prober.probe(
                target, snapshot.timeout, snapshot.payload_size
            )
        except Exception as exc:
            logger.exception("probe of %s raised", target.name)
            outcome = TransportError(f"probe failed: {exc}")
        self._report(target, outcome)

    def _report(self, target: Target, outcome) -> None:
        self.results.put_nowait(ProbeReport(target.name, outcome, time.time()))

    def reload(self) -> bool:
        try:
            targets = self.registry.load()
        except LoadError as exc:
            logger.error(
                "reload failed, keeping %d current targets: %s", len(self.targets), exc
            )
            self.broadcaster.publish(ReloadFailed(str(exc), time.time()))
            return False
        added = targets.keys() - self.targets.keys()
        removed = self.targets.keys() - targets.keys()
        logger.info(
            "reloaded %d targets (+%d -%d)", len(targets), len(added), len(removed)
        )
        self.targets = targets
        if self.on_targets_replaced is not None:
            self.on_targets_replaced(targets)
        self.broadcaster.publish(TargetsReplaced(frozenset(targets), time.time()))
        self.fire()
        return True

    def change_config(self, field: str, value) -> bool:
        try:
            current = self.config.update(field, value)
        except ConfigError as exc:
            logger.warning("rejected %s=%r: %s", field, value, exc)
            self.broadcaster.publish(
                ConfigRejected(field, value, str(exc), time.time())
            )
            return False
        logger.info("%s set to %s from the next round", field, getattr(current, field))
        return True

    async def drain(self) -> None:
        """Wait for every in-flight probe to deliver its report."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def cancel_inflight(self) -> None:
        for task in list(self._inflight):
            task.cancel()
