from __future__ import annotations

import asyncio
from collections import defaultdict

import httpx
import pytest

from downdetector.config import MonitorTarget, NotificationConfig
from downdetector.discord import DiscordNotifier
from downdetector.probe import ProbeOutcome
from downdetector.scheduler import Scheduler, advance_tick
from downdetector.tracker import SiteStateTracker, SiteStatus, TransitionEvent

OK = ProbeOutcome.success(200)
FAIL = ProbeOutcome.http_error(500)


class _ListSink:
    def __init__(self) -> None:
        self.events: list[TransitionEvent] = []

    def submit(self, event: TransitionEvent) -> None:
        self.events.append(event)


class _ScriptedProbe:
    """Returns scripted outcomes per URL and records when each probe started."""

    def __init__(self, script: dict[str, list[ProbeOutcome]] | None = None, delays: dict[str, float] | None = None):
        self.script = {url: list(outcomes) for url, outcomes in (script or {}).items()}
        self.delays = delays or {}
        self.calls: dict[str, list[float]] = defaultdict(list)
        self.in_flight: dict[str, int] = defaultdict(int)
        self.max_in_flight: dict[str, int] = defaultdict(int)

    async def __call__(self, target: MonitorTarget) -> ProbeOutcome:
        self.calls[target.url].append(asyncio.get_running_loop().time())
        self.in_flight[target.url] += 1
        self.max_in_flight[target.url] = max(self.max_in_flight[target.url], self.in_flight[target.url])
        try:
            delay = self.delays.get(target.url)
            if delay:
                await asyncio.sleep(delay)
            outcomes = self.script.get(target.url) or [OK]
            return outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        finally:
            self.in_flight[target.url] -= 1


async def _run_for(scheduler: Scheduler, seconds: float) -> None:
    stop = asyncio.Event()
    task = asyncio.create_task(scheduler.run(stop))
    await asyncio.sleep(seconds)
    stop.set()
    await asyncio.wait_for(task, timeout=5.0)


def test_advance_tick_on_time() -> None:
    assert advance_tick(10.0, 10.2, 1.0) == (11.0, 0)
    assert advance_tick(10.0, 11.0, 1.0) == (11.0, 0)


def test_advance_tick_skips_overrun_ticks() -> None:
    assert advance_tick(10.0, 11.5, 1.0) == (12.0, 1)
    assert advance_tick(10.0, 13.2, 1.0) == (14.0, 3)


def test_advance_tick_does_not_drift() -> None:
    tick = 0.0
    for i in range(1, 101):
        tick, missed = advance_tick(tick, tick + 0.3, 1.0)
        assert missed == 0
    assert tick == pytest.approx(100.0)


@pytest.mark.asyncio
async def test_all_up_produces_no_events() -> None:
    target = MonitorTarget(url="https://up.example.com/")
    sink = _ListSink()
    scheduler = Scheduler([target], _ScriptedProbe({target.url: [OK]}), SiteStateTracker(), sink)
    for _ in range(10):
        await scheduler.check_once(target)
    assert sink.events == []
    assert scheduler.checks_run[target.url] == 10


@pytest.mark.asyncio
async def test_up_down_down_up_produces_two_events() -> None:
    target = MonitorTarget(url="https://flaky.example.com/")
    sink = _ListSink()
    probe = _ScriptedProbe({target.url: [OK, FAIL, FAIL, OK]})
    scheduler = Scheduler([target], probe, SiteStateTracker(), sink)
    for _ in range(4):
        await scheduler.check_once(target)
    assert [(e.previous_status, e.new_status) for e in sink.events] == [
        (SiteStatus.UP, SiteStatus.DOWN),
        (SiteStatus.DOWN, SiteStatus.UP),
    ]


@pytest.mark.asyncio
async def test_first_check_fires_immediately_and_stop_is_prompt() -> None:
    target = MonitorTarget(url="https://slow-interval.example.com/", check_interval_seconds=60.0)
    probe = _ScriptedProbe()
    scheduler = Scheduler([target], probe, SiteStateTracker(), _ListSink())
    loop = asyncio.get_running_loop()
    started = loop.time()
    await _run_for(scheduler, 0.1)
    assert len(probe.calls[target.url]) == 1
    assert probe.calls[target.url][0] - started < 0.05
    assert loop.time() - started < 1.0


@pytest.mark.asyncio
async def test_targets_run_independently_at_their_own_interval() -> None:
    fast = MonitorTarget(url="https://fast.example.com/", check_interval_seconds=0.05)
    medium = MonitorTarget(url="https://medium.example.com/", check_interval_seconds=0.1)
    stalled = MonitorTarget(url="https://stalled.example.com/", check_interval_seconds=0.05)
    probe = _ScriptedProbe(delays={stalled.url: 0.4})
    scheduler = Scheduler([fast, medium, stalled], probe, SiteStateTracker(), _ListSink())

    await _run_for(scheduler, 0.6)

    fast_calls = probe.calls[fast.url]
    medium_calls = probe.calls[medium.url]
    assert 8 <= len(fast_calls) <= 14
    assert 4 <= len(medium_calls) <= 8
    gaps = [b - a for a, b in zip(fast_calls, fast_calls[1:])]
    assert sum(gaps) / len(gaps) == pytest.approx(0.05, abs=0.02)

    # The stalled target never overlaps itself and coalesces missed ticks.
    assert len(probe.calls[stalled.url]) <= 3
    assert max(probe.max_in_flight.values()) == 1
    assert scheduler.ticks_skipped[stalled.url] >= 1


@pytest.mark.asyncio
async def test_probe_exception_does_not_stop_target_loop() -> None:
    target = MonitorTarget(url="https://boom.example.com/", check_interval_seconds=0.02)
    calls = {"n": 0}

    async def exploding_probe(t: MonitorTarget) -> ProbeOutcome:
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("unexpected")
        return OK

    scheduler = Scheduler([target], exploding_probe, SiteStateTracker(), _ListSink())
    await _run_for(scheduler, 0.15)
    assert calls["n"] >= 3


@pytest.mark.asyncio
async def test_slow_webhook_does_not_delay_checks() -> None:
    async def webhook(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.3)
        raise httpx.ReadTimeout("timed out", request=request)

    target = MonitorTarget(url="https://flapping.example.com/", check_interval_seconds=0.02)
    probe = _ScriptedProbe({target.url: [OK, FAIL] * 50})
    config = NotificationConfig(webhook_url="https://discord.com/api/webhooks/1/abc", timeout_seconds=0.3)

    async with httpx.AsyncClient(transport=httpx.MockTransport(webhook)) as client:
        notifier = DiscordNotifier(config, client)
        notifier.start()
        scheduler = Scheduler([target], probe, SiteStateTracker(), notifier)
        await _run_for(scheduler, 0.4)
        await notifier.close(grace_seconds=0.05)

    assert len(probe.calls[target.url]) >= 12
    assert notifier.delivered == 0
    assert notifier.failed >= 1


@pytest.mark.asyncio
async def test_run_once_checks_every_target() -> None:
    targets = [MonitorTarget(url=f"https://site{i}.example.com/") for i in range(5)]
    probe = _ScriptedProbe()
    scheduler = Scheduler(targets, probe, SiteStateTracker(), _ListSink())
    events = await scheduler.run_once()
    assert events == []
    assert all(len(probe.calls[t.url]) == 1 for t in targets)
