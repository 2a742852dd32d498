from __future__ import annotations

import asyncio
import logging
import math
from typing import Awaitable, Callable, Iterable, Protocol

from downdetector.config import MonitorTarget
from downdetector.probe import ProbeOutcome, safe_url
from downdetector.tracker import SiteStateTracker, TransitionEvent


LOGGER = logging.getLogger(__name__)

ProbeFunc = Callable[[MonitorTarget], Awaitable[ProbeOutcome]]


class EventSink(Protocol):
    def submit(self, event: TransitionEvent) -> None: ...


def advance_tick(last_tick: float, now: float, interval: float) -> tuple[float, int]:
    """
    Next tick of a fixed-period ticker that last fired at ``last_tick``.

    Ticks already in the past when the previous cycle finished are skipped
    rather than run back to back; the second value counts them.
    """
    interval = float(interval)
    next_tick = last_tick + interval
    if now <= next_tick:
        return next_tick, 0
    missed = math.ceil((now - next_tick) / interval)
    return next_tick + missed * interval, missed


class Scheduler:
    def __init__(
        self,
        targets: Iterable[MonitorTarget],
        probe: ProbeFunc,
        tracker: SiteStateTracker,
        sink: EventSink,
    ) -> None:
        self.targets = tuple(targets)
        self._probe = probe
        self._tracker = tracker
        self._sink = sink
        self.checks_run: dict[str, int] = {t.url: 0 for t in self.targets}
        self.ticks_skipped: dict[str, int] = {t.url: 0 for t in self.targets}

    async def check_once(self, target: MonitorTarget) -> TransitionEvent | None:
        outcome = await self._probe(target)
        self.checks_run[target.url] = self.checks_run.get(target.url, 0) + 1

        if outcome.ok:
            LOGGER.info("%s: UP (%s)", safe_url(target.url), outcome.describe())
        else:
            LOGGER.warning("%s: DOWN (%s)", safe_url(target.url), outcome.describe())

        event = self._tracker.evaluate(target, outcome)
        if event is not None:
            LOGGER.warning(
                "Transition %s: %s -> %s",
                safe_url(event.url),
                event.previous_status.value,
                event.new_status.value,
            )
            self._sink.submit(event)
        return event

    async def run_target(self, target: MonitorTarget, stop_event: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        interval = float(target.check_interval_seconds)
        next_tick = loop.time()

        while not stop_event.is_set():
            try:
                await self.check_once(target)
            except Exception:
                LOGGER.exception("Check cycle failed for %s", safe_url(target.url))

            next_tick, missed = advance_tick(next_tick, loop.time(), interval)
            if missed:
                self.ticks_skipped[target.url] = self.ticks_skipped.get(target.url, 0) + missed
                LOGGER.warning(
                    "%s: probe overran its interval; skipped %d tick(s)",
                    safe_url(target.url),
                    missed,
                )

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(0.0, next_tick - loop.time()))
            except asyncio.TimeoutError:
                pass

        LOGGER.debug("Stopped checking %s", safe_url(target.url))

    async def run(self, stop_event: asyncio.Event) -> None:
        tasks = [
            asyncio.create_task(self.run_target(target, stop_event), name=f"check:{safe_url(target.url)}")
            for target in self.targets
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def run_once(self) -> list[TransitionEvent]:
        results = await asyncio.gather(*(self.check_once(target) for target in self.targets))
        return [event for event in results if event is not None]
