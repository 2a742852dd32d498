from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import dataclass
from typing import Callable
from urllib.parse import urlsplit, urlunsplit

import httpx

from downdetector.config import MonitorTarget


class ProbeKind(enum.Enum):
    SUCCESS = "success"
    HTTP_ERROR = "http_error"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ProbeOutcome:
    kind: ProbeKind
    status_code: int | None = None
    reason: str | None = None
    elapsed_ms: float | None = None

    @classmethod
    def success(cls, status_code: int, *, elapsed_ms: float | None = None) -> ProbeOutcome:
        return cls(ProbeKind.SUCCESS, status_code=status_code, elapsed_ms=elapsed_ms)

    @classmethod
    def http_error(cls, status_code: int, *, elapsed_ms: float | None = None) -> ProbeOutcome:
        return cls(ProbeKind.HTTP_ERROR, status_code=status_code, elapsed_ms=elapsed_ms)

    @classmethod
    def network_error(cls, reason: str, *, elapsed_ms: float | None = None) -> ProbeOutcome:
        return cls(ProbeKind.NETWORK_ERROR, reason=reason, elapsed_ms=elapsed_ms)

    @classmethod
    def timeout(cls, reason: str | None = None, *, elapsed_ms: float | None = None) -> ProbeOutcome:
        return cls(ProbeKind.TIMEOUT, reason=reason, elapsed_ms=elapsed_ms)

    @property
    def ok(self) -> bool:
        return self.kind is ProbeKind.SUCCESS

    def describe(self) -> str:
        if self.kind in (ProbeKind.SUCCESS, ProbeKind.HTTP_ERROR):
            return f"HTTP {self.status_code}"
        if self.kind is ProbeKind.TIMEOUT:
            return f"timeout ({self.reason})" if self.reason else "timeout"
        return f"network error: {self.reason}"


def is_success_status(status_code: int) -> bool:
    return 200 <= status_code < 300


def safe_url(url: str) -> str:
    """
    Strip query strings and fragments so tokens in monitored URLs stay out of logs.
    """
    s = (url or "").strip()
    if not s:
        return s
    try:
        parts = urlsplit(s)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except ValueError:
        return s[:500]


async def probe(
    client: httpx.AsyncClient,
    target: MonitorTarget,
    *,
    clock: Callable[[], float] = time.perf_counter,
) -> ProbeOutcome:
    """
    Issue one request against ``target`` and classify the result.

    Every failure mode is returned as a ``ProbeOutcome``. The timeout caps the
    whole request, body included. A response that completes at or after the
    timeout is reported as TIMEOUT.
    """
    timeout = float(target.timeout_seconds)
    started = clock()
    try:
        resp = await asyncio.wait_for(
            client.request(
                target.method,
                target.url,
                follow_redirects=True,
                timeout=timeout,
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        elapsed_ms = (clock() - started) * 1000.0
        return ProbeOutcome.timeout(f"request exceeded {timeout:g}s", elapsed_ms=round(elapsed_ms, 3))
    except httpx.TimeoutException as e:
        elapsed_ms = (clock() - started) * 1000.0
        return ProbeOutcome.timeout(f"{type(e).__name__} after {timeout:g}s", elapsed_ms=round(elapsed_ms, 3))
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        elapsed_ms = (clock() - started) * 1000.0
        return ProbeOutcome.network_error(f"{type(e).__name__}: {e}", elapsed_ms=round(elapsed_ms, 3))

    elapsed = clock() - started
    elapsed_ms = round(elapsed * 1000.0, 3)
    if elapsed >= timeout:
        return ProbeOutcome.timeout(f"response after {elapsed:.3f}s >= {timeout:g}s", elapsed_ms=elapsed_ms)

    if is_success_status(resp.status_code):
        return ProbeOutcome.success(resp.status_code, elapsed_ms=elapsed_ms)
    return ProbeOutcome.http_error(resp.status_code, elapsed_ms=elapsed_ms)
