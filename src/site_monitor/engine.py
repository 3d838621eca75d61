from __future__ import annotations

import asyncio
import logging
from typing import Dict

from . import config
from .config import ConfigPort
from .events import Broadcaster, Consumer, ProbeReport
from .ping import Prober, acquire_facilities
from .registry import Target, TargetRegistry
from .scheduler import ControlEvent, Scheduler, SetAveraging, Tick
from .stats import Aggregator

logger = logging.getLogger(__name__)


class Engine:
    """Wires the scheduler, result stream and aggregator to consumers.

    Startup is two-phase: ``subscribe`` every consumer, then ``run``.
    """

    def __init__(
        self,
        registry: TargetRegistry,
        config_port: ConfigPort,
        prober,
        targets: Dict[str, Target],
        averaging: bool = False,
        tick_seconds: float = config.TICK_SECONDS,
    ):
        self.config = config_port
        self.tick_seconds = tick_seconds
        self.broadcaster = Broadcaster()
        self.events: "asyncio.Queue[ControlEvent]" = asyncio.Queue()
        self.results: "asyncio.Queue[ProbeReport]" = asyncio.Queue()
        self.aggregator = Aggregator(targets.keys(), self.broadcaster, averaging)
        self.scheduler = Scheduler(
            registry,
            config_port,
            prober,
            self.results,
            targets,
            broadcaster=self.broadcaster,
            on_targets_replaced=self._targets_replaced,
        )

    @classmethod
    def bootstrap(
        cls, registry: TargetRegistry, config_port: ConfigPort, averaging: bool = False
    ) -> "Engine":
        """Load targets and open probing facilities; both failures are fatal."""
        targets = registry.load()
        required = {t.version for t in targets.values()}
        facilities = acquire_facilities(required, optional={4, 6} - required)
        return cls(registry, config_port, Prober(facilities), targets, averaging)

    @property
    def targets(self) -> Dict[str, Target]:
        return self.scheduler.targets

    def subscribe(self, consumer: Consumer) -> None:
        self.broadcaster.subscribe(consumer)

    def post(self, event: ControlEvent) -> None:
        self.events.put_nowait(event)

    def _targets_replaced(self, targets: Dict[str, Target]) -> None:
        self.aggregator.retain(targets.keys())

    def handle(self, event: ControlEvent) -> None:
        if isinstance(event, SetAveraging):
            enabled = (
                not self.aggregator.averaging if event.enabled is None else event.enabled
            )
            if enabled != self.aggregator.averaging:
                self.aggregator.set_averaging(enabled)
        else:
            self.scheduler.handle(event)

    async def control_loop(self) -> None:
        while True:
            event = await self.events.get()
            self.handle(event)

    async def ticker(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while True:
            next_tick += self.tick_seconds
            await asyncio.sleep(max(0, next_tick - loop.time()))
            self.events.put_nowait(Tick())

    async def run(self, stop_event: asyncio.Event) -> None:
        if not len(self.broadcaster):
            logger.warning("starting without consumers")
        self.scheduler.start()
        tasks = [
            asyncio.create_task(self.control_loop(), name="control-loop"),
            asyncio.create_task(self.ticker(), name="ticker"),
            asyncio.create_task(self.aggregator.consume(self.results), name="aggregator"),
        ]
        try:
            await stop_event.wait()
        finally:
            self.scheduler.cancel_inflight()
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
