from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from downdetector.config import MonitorTarget
from downdetector.probe import ProbeOutcome


LOGGER = logging.getLogger(__name__)


class SiteStatus(enum.Enum):
    UP = "UP"
    DOWN = "DOWN"


@dataclass
class SiteState:
    target: MonitorTarget
    current_status: SiteStatus
    last_changed_at: datetime
    fail_streak: int = 0
    success_streak: int = 0


@dataclass(frozen=True)
class TransitionEvent:
    url: str
    previous_status: SiteStatus
    new_status: SiteStatus
    occurred_at: datetime
    reason: str | None = None

    @property
    def recovered(self) -> bool:
        return self.new_status is SiteStatus.UP


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def update_effective_status(
    *,
    prev_status: SiteStatus,
    observed_ok: bool,
    fail_streak: int,
    success_streak: int,
    down_after_failures: int,
    up_after_successes: int,
) -> tuple[SiteStatus, int, int]:
    down_after_failures = max(1, int(down_after_failures))
    up_after_successes = max(1, int(up_after_successes))

    if observed_ok:
        success_streak = int(success_streak) + 1
        fail_streak = 0
    else:
        fail_streak = int(fail_streak) + 1
        success_streak = 0

    if prev_status is SiteStatus.UP:
        next_status = SiteStatus.DOWN if fail_streak >= down_after_failures else SiteStatus.UP
    else:
        next_status = SiteStatus.UP if success_streak >= up_after_successes else SiteStatus.DOWN

    return next_status, fail_streak, success_streak


class SiteStateTracker:
    """
    Last-known availability per monitored URL.

    The first evaluation of a target only records its status. Later
    evaluations return a ``TransitionEvent`` when the status flips. With the
    default thresholds of 1 a single differing sample flips the status;
    larger thresholds require that many consecutive differing samples.
    """

    def __init__(
        self,
        *,
        down_after_failures: int = 1,
        up_after_successes: int = 1,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.down_after_failures = max(1, int(down_after_failures))
        self.up_after_successes = max(1, int(up_after_successes))
        self._now = now
        self._states: dict[str, SiteState] = {}

    def evaluate(self, target: MonitorTarget, outcome: ProbeOutcome) -> TransitionEvent | None:
        observed_ok = outcome.ok
        state = self._states.get(target.url)

        if state is None:
            self._states[target.url] = SiteState(
                target=target,
                current_status=SiteStatus.UP if observed_ok else SiteStatus.DOWN,
                last_changed_at=self._now(),
                fail_streak=0 if observed_ok else 1,
                success_streak=1 if observed_ok else 0,
            )
            LOGGER.debug("Initial status for %s: %s", target.url, self._states[target.url].current_status.value)
            return None

        prev_status = state.current_status
        next_status, state.fail_streak, state.success_streak = update_effective_status(
            prev_status=prev_status,
            observed_ok=observed_ok,
            fail_streak=state.fail_streak,
            success_streak=state.success_streak,
            down_after_failures=self.down_after_failures,
            up_after_successes=self.up_after_successes,
        )
        if next_status is prev_status:
            return None

        occurred_at = self._now()
        state.current_status = next_status
        state.last_changed_at = occurred_at
        return TransitionEvent(
            url=target.url,
            previous_status=prev_status,
            new_status=next_status,
            occurred_at=occurred_at,
            reason=outcome.describe(),
        )

    def get(self, url: str) -> SiteState | None:
        return self._states.get(url)

    def snapshot(self) -> dict[str, SiteStatus]:
        return {url: state.current_status for url, state in self._states.items()}
