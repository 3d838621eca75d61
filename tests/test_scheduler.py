import asyncio
import collections
import random
import time

from conftest import FakeProber, StaticRegistry, drain_queue, make_targets

from site_monitor.config import ConfigPort, PayloadSize, RoundConfig
from site_monitor.events import (
    AverageUpdated,
    Broadcaster,
    ConfigRejected,
    ReloadFailed,
    TargetsReplaced,
    TargetUpdated,
)
from site_monitor.engine import Engine
from site_monitor.outage_logger import OutageLogger
from site_monitor.ping import TIMEOUT, Success, TransportError
from site_monitor.registry import TargetRegistry
from site_monitor.scheduler import (
    ConfigChanged,
    ManualTrigger,
    ReloadTargets,
    Scheduler,
    SetAveraging,
    State,
    Tick,
)


def make_scheduler(targets, prober=None, registry=None, **round_config):
    results = asyncio.Queue()
    events = []
    broadcaster = Broadcaster()
    broadcaster.subscribe(events.append)
    sched = Scheduler(
        registry or StaticRegistry(targets),
        ConfigPort(RoundConfig(**round_config)),
        prober or FakeProber(),
        results,
        targets,
        broadcaster=broadcaster,
    )
    return sched, results, events


def test_countdown_fires_and_resets(two_targets):
    async def scenario():
        sched, results, _ = make_scheduler(two_targets, refresh_interval=3)
        assert sched.state is State.IDLE
        sched.handle(Tick())  # ignored until started
        assert sched.rounds == 0

        sched.start()
        assert (sched.state, sched.remaining, sched.rounds) == (State.WAITING, 3, 1)
        sched.handle(Tick())
        sched.handle(Tick())
        assert (sched.remaining, sched.rounds) == (1, 1)
        sched.handle(Tick())
        assert (sched.remaining, sched.rounds) == (3, 2)

        await sched.drain()
        return drain_queue(results)

    reports = asyncio.run(scenario())
    assert len(reports) == 4
    assert collections.Counter(r.name for r in reports) == {"A": 2, "B": 2}


def test_manual_trigger_preempts_countdown(two_targets):
    async def scenario():
        sched, _, _ = make_scheduler(two_targets, refresh_interval=5)
        sched.start()
        sched.handle(Tick())
        sched.handle(Tick())
        assert sched.remaining == 3
        sched.handle(ManualTrigger())
        assert (sched.remaining, sched.rounds) == (5, 2)
        await sched.drain()

    asyncio.run(scenario())


def test_config_change_applies_from_next_round(two_targets):
    async def scenario():
        prober = FakeProber(delay=0.05)
        sched, results, _ = make_scheduler(
            two_targets, prober=prober, timeout=4, refresh_interval=10
        )
        sched.start()
        sched.handle(ConfigChanged("timeout", "1"))
        sched.handle(ConfigChanged("refresh_interval", "2"))
        sched.handle(ConfigChanged("payload_size", "huge"))
        # current countdown is untouched
        assert sched.remaining == 10
        await asyncio.sleep(0)
        first_round = list(prober.calls)
        sched.handle(ManualTrigger())
        assert sched.remaining == 2
        await sched.drain()
        return first_round, prober.calls[len(first_round):]

    first, second = asyncio.run(scenario())
    assert {(t, p) for _, t, p in first} == {(4, PayloadSize.MEDIUM)}
    assert {(t, p) for _, t, p in second} == {(1, PayloadSize.HUGE)}


def test_rejected_config_is_reported_and_ignored(two_targets):
    async def scenario():
        sched, _, events = make_scheduler(two_targets, timeout=4)
        before = sched.config.snapshot()
        sched.handle(ConfigChanged("timeout", "0"))
        sched.handle(ConfigChanged("refresh_interval", "soon"))
        sched.handle(ConfigChanged("payload_size", "enormous"))
        return before, sched.config.snapshot(), events

    before, after, events = asyncio.run(scenario())
    assert before == after
    assert [e.field for e in events] == ["timeout", "refresh_interval", "payload_size"]
    assert all(isinstance(e, ConfigRejected) for e in events)


def test_reload_replaces_targets_and_fires(tmp_path, two_targets):
    path = tmp_path / "sites.json"
    path.write_text('{"A": "127.0.0.1", "C": "10.0.0.3"}', encoding="utf-8")
    replaced = []

    async def scenario():
        sched, results, events = make_scheduler(
            two_targets, registry=TargetRegistry(str(path)), refresh_interval=5
        )
        sched.on_targets_replaced = replaced.append
        sched.start()
        await sched.drain()
        drain_queue(results)
        sched.handle(Tick())
        sched.handle(ReloadTargets())
        assert (sched.remaining, sched.rounds) == (5, 2)
        await sched.drain()
        return sched, drain_queue(results), events

    sched, reports, events = asyncio.run(scenario())
    assert list(sched.targets) == ["A", "C"]
    assert sorted(r.name for r in reports) == ["A", "C"]
    assert list(replaced[0]) == ["A", "C"]
    assert [e.names for e in events if isinstance(e, TargetsReplaced)] == [{"A", "C"}]


def test_failed_reload_keeps_previous_targets(two_targets, broken_registry):
    async def scenario():
        sched, results, events = make_scheduler(
            two_targets, registry=broken_registry, refresh_interval=5
        )
        sched.start()
        sched.handle(Tick())
        sched.handle(ReloadTargets())
        await sched.drain()
        return sched, drain_queue(results), events

    sched, reports, events = asyncio.run(scenario())
    assert list(sched.targets) == ["A", "B"]
    assert (sched.rounds, sched.remaining) == (1, 4)
    assert len(reports) == 2
    assert len(events) == 1 and isinstance(events[0], ReloadFailed)
    assert "sites.json" in events[0].reason


def test_dispatch_does_not_wait_for_probes(two_targets):
    async def scenario():
        sched, results, _ = make_scheduler(
            two_targets, prober=FakeProber(delay=30), refresh_interval=2
        )
        started = time.monotonic()
        sched.start()
        sched.handle(Tick())
        sched.handle(Tick())
        elapsed = time.monotonic() - started
        inflight = sched.inflight
        sched.cancel_inflight()
        await asyncio.sleep(0)
        return elapsed, inflight, sched.rounds, results.qsize()

    elapsed, inflight, rounds, queued = asyncio.run(scenario())
    assert elapsed < 0.5
    assert rounds == 2
    assert inflight == 4
    assert queued == 0


def test_missing_facility_reports_transport_error(two_targets):
    async def scenario():
        prober = FakeProber(versions=(4,))
        sched, results, _ = make_scheduler(two_targets, prober=prober)
        sched.start()
        await sched.drain()
        return prober, {r.name: r.outcome for r in drain_queue(results)}

    prober, outcomes = asyncio.run(scenario())
    assert outcomes["A"] == Success(1.5)
    assert isinstance(outcomes["B"], TransportError)
    assert "IPv6" in outcomes["B"].message
    assert [c[0] for c in prober.calls] == ["A"]


def test_probe_crash_still_yields_one_outcome(two_targets):
    async def scenario():
        prober = FakeProber(outcomes={"A": RuntimeError("boom")})
        sched, results, _ = make_scheduler(two_targets, prober=prober)
        sched.start()
        await sched.drain()
        return {r.name: r.outcome for r in drain_queue(results)}

    outcomes = asyncio.run(scenario())
    assert outcomes["A"] == TransportError("probe failed: boom")
    assert outcomes["B"] == Success(1.5)


def test_every_target_reports_every_round():
    targets = make_targets({f"site{i:03d}": f"10.0.{i // 250}.{i % 250 + 1}" for i in range(300)})
    outcomes = {name: TIMEOUT for name in list(targets)[::7]}

    async def scenario():
        prober = FakeProber(outcomes=outcomes, delay=lambda t: random.uniform(0, 0.02))
        sched, results, _ = make_scheduler(targets, prober=prober, refresh_interval=1)
        sched.start()
        for _ in range(4):
            sched.handle(Tick())
        await sched.drain()
        return sched.rounds, drain_queue(results)

    rounds, reports = asyncio.run(scenario())
    assert rounds == 5
    counts = collections.Counter(r.name for r in reports)
    assert set(counts) == set(targets)
    assert set(counts.values()) == {5}
    assert all(r.outcome == TIMEOUT for r in reports if r.name in outcomes)


def run_engine_until(engine, predicate, timeout=5):
    seen = []

    async def scenario():
        done = asyncio.Event()

        def consumer(event):
            seen.append(event)
            if predicate(seen):
                done.set()

        engine.subscribe(consumer)
        stop = asyncio.Event()
        runner = asyncio.create_task(engine.run(stop))
        try:
            await asyncio.wait_for(done.wait(), timeout)
        finally:
            stop.set()
            await runner

    asyncio.run(scenario())
    return seen


def test_engine_rounds_reach_consumers(two_targets):
    engine = Engine(
        StaticRegistry(two_targets),
        ConfigPort(RoundConfig(refresh_interval=1)),
        FakeProber(outcomes={"B": TIMEOUT}),
        two_targets,
        averaging=True,
        tick_seconds=0.01,
    )
    seen = run_engine_until(
        engine, lambda s: sum(isinstance(e, TargetUpdated) for e in s) >= 6
    )
    assert engine.scheduler.rounds >= 3
    assert engine.aggregator.states["A"].outcome == Success(1.5)
    assert engine.aggregator.states["B"].outcome == TIMEOUT
    averages = [e for e in seen if isinstance(e, AverageUpdated)]
    assert averages and {e.name for e in averages} == {"A"}
    assert engine.aggregator.averages["B"].count == 0


def test_engine_averaging_events(two_targets):
    engine = Engine(
        StaticRegistry(two_targets), ConfigPort(), FakeProber(), two_targets
    )
    engine.handle(SetAveraging(None))
    assert engine.aggregator.averaging
    engine.aggregator.averages["A"].add(3.0)
    engine.handle(SetAveraging(True))  # already on: keeps accumulating
    assert engine.aggregator.averages["A"].count == 1
    engine.handle(SetAveraging(False))
    assert engine.aggregator.averages == {}
    engine.handle(SetAveraging(None))
    assert engine.aggregator.averages["A"].count == 0


def test_engine_reload_prunes_state(two_targets):
    registry = StaticRegistry(two_targets)
    engine = Engine(
        registry, ConfigPort(RoundConfig(refresh_interval=60)), FakeProber(), two_targets
    )

    def reloaded(seen):
        return registry.loads and any(e.name == "C" for e in seen if isinstance(e, TargetUpdated))

    def first_round(seen):
        if sum(isinstance(e, TargetUpdated) for e in seen) == 2 and not registry.loads:
            registry.targets = make_targets({"A": "127.0.0.1", "C": "10.0.0.3"})
            engine.post(ReloadTargets())
        return reloaded(seen)

    run_engine_until(engine, first_round)
    assert set(engine.aggregator.states) == {"A", "C"}
    assert engine.aggregator.registered == {"A", "C"}


def test_engine_reload_forgets_outages_of_removed_targets(tmp_path, two_targets):
    registry = StaticRegistry(two_targets)
    engine = Engine(
        registry,
        ConfigPort(RoundConfig(refresh_interval=60)),
        FakeProber(outcomes={"B": TIMEOUT}),
        two_targets,
    )
    outages = OutageLogger(str(tmp_path / "events.log"), threshold=1)
    engine.subscribe(outages)
    open_before_reload = []

    def first_round(seen):
        if sum(isinstance(e, TargetUpdated) for e in seen) == 2 and not registry.loads:
            open_before_reload.append(outages.tracks["B"].outage_open)
            registry.targets = make_targets({"A": "127.0.0.1"})
            engine.post(ReloadTargets())
        return any(isinstance(e, TargetsReplaced) for e in seen)

    run_engine_until(engine, first_round)
    outages.finalize()
    assert open_before_reload == [True]
    assert set(outages.tracks) == {"A"}
    assert not (tmp_path / "events.log").exists()


def test_engine_consumers_see_scheduler_events(two_targets, broken_registry):
    engine = Engine(broken_registry, ConfigPort(), FakeProber(), two_targets)
    seen = []
    engine.subscribe(seen.append)
    engine.handle(ReloadTargets())
    engine.handle(ConfigChanged("timeout", "0"))
    assert [type(e) for e in seen] == [ReloadFailed, ConfigRejected]
