import asyncio
import json

import pytest

from site_monitor.ping import Success
from site_monitor.registry import LoadError, parse_targets


def make_targets(mapping):
    return parse_targets(json.dumps(mapping))


class FakeProber:
    """Stands in for Prober: scripted outcomes, optional delay, no sockets."""

    def __init__(self, outcomes=None, delay=0.0, versions=(4, 6)):
        self.outcomes = outcomes or {}
        self.delay = delay
        self.versions = versions
        self.calls = []

    def facility_for(self, target):
        return object() if target.version in self.versions else None

    async def probe(self, target, timeout, payload_size):
        self.calls.append((target.name, timeout, payload_size))
        delay = self.delay(target) if callable(self.delay) else self.delay
        if delay:
            await asyncio.sleep(delay)
        outcome = self.outcomes.get(target.name, Success(1.5))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class StaticRegistry:
    def __init__(self, targets):
        self.targets = targets
        self.loads = 0

    def load(self):
        self.loads += 1
        if isinstance(self.targets, Exception):
            raise self.targets
        return dict(self.targets)


def drain_queue(queue):
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


@pytest.fixture
def two_targets():
    return make_targets({"A": "127.0.0.1", "B": "::1"})


@pytest.fixture
def broken_registry():
    return StaticRegistry(LoadError("cannot read sites.json"))
