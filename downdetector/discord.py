from __future__ import annotations

import asyncio
import contextlib
import logging

import httpx

from downdetector.config import NotificationConfig
from downdetector.errors import NotifyError
from downdetector.probe import safe_url
from downdetector.tracker import TransitionEvent


LOGGER = logging.getLogger(__name__)

DISCORD_MAX_MESSAGE_LEN = 2000


def build_transition_message(event: TransitionEvent, *, mention_id: int | None = None) -> str:
    url = safe_url(event.url)
    if event.recovered:
        lines = [f"🟢 {url} has RECOVERED"]
    else:
        lines = [f"🔴 Alert: {url} is DOWN!"]
    if event.reason:
        lines.append(f"Reason: {event.reason}")
    lines.append(f"Status: {event.previous_status.value} -> {event.new_status.value}")
    lines.append(f"At: {event.occurred_at.isoformat(timespec='seconds')}")

    tag = f"<@{mention_id}> " if mention_id is not None else ""
    content = tag + "\n".join(lines)
    if len(content) > DISCORD_MAX_MESSAGE_LEN:
        content = content[: DISCORD_MAX_MESSAGE_LEN - 1] + "…"
    return content


def redact_webhook_url(webhook_url: str) -> str:
    """Webhook URLs embed their secret token as the last path segment."""
    head, _, _token = webhook_url.rstrip("/").rpartition("/")
    return f"{head}/<redacted>" if head else "<redacted>"


async def send_discord_message(
    client: httpx.AsyncClient,
    webhook_url: str,
    content: str,
    *,
    timeout_seconds: float,
) -> None:
    try:
        resp = await asyncio.wait_for(
            client.post(webhook_url, json={"content": content}, timeout=timeout_seconds),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        raise NotifyError(f"webhook request exceeded {timeout_seconds:g}s") from e
    except httpx.HTTPError as e:
        msg = f"{type(e).__name__}: {e}".replace(webhook_url, redact_webhook_url(webhook_url))
        raise NotifyError(msg) from e
    if not 200 <= resp.status_code < 300:
        raise NotifyError(f"webhook returned HTTP {resp.status_code}: {resp.text[:200]}")


class DiscordNotifier:
    """
    Delivers transition events to a Discord webhook from a dedicated task.

    ``submit`` never blocks the caller. When the queue is full the oldest
    pending event is dropped to make room. A single consumer delivers events
    in submission order, so a DOWN/RECOVERED pair for one site keeps its order.
    """

    def __init__(self, config: NotificationConfig, client: httpx.AsyncClient) -> None:
        self.config = config
        self._client = client
        self._queue: asyncio.Queue[TransitionEvent] = asyncio.Queue(maxsize=max(1, int(config.queue_size)))
        self._task: asyncio.Task[None] | None = None
        self.delivered = 0
        self.failed = 0
        self.dropped = 0

    @property
    def enabled(self) -> bool:
        return bool(self.config.webhook_url)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def notify(self, event: TransitionEvent) -> None:
        if not self.config.webhook_url:
            return
        content = build_transition_message(event, mention_id=self.config.mention_id)
        await send_discord_message(
            self._client,
            self.config.webhook_url,
            content,
            timeout_seconds=self.config.timeout_seconds,
        )

    def submit(self, event: TransitionEvent) -> None:
        try:
            self._queue.put_nowait(event)
            return
        except asyncio.QueueFull:
            pass

        oldest = self._queue.get_nowait()
        self._queue.task_done()
        self.dropped += 1
        LOGGER.warning(
            "Notification queue full (size=%d); dropped oldest event url=%s %s->%s",
            self._queue.maxsize,
            safe_url(oldest.url),
            oldest.previous_status.value,
            oldest.new_status.value,
        )
        self._queue.put_nowait(event)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="discord-notifier")

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.notify(event)
            except NotifyError as e:
                self.failed += 1
                LOGGER.error("Failed to send notification for %s: %s", safe_url(event.url), e)
            except Exception:
                self.failed += 1
                LOGGER.exception("Unexpected error sending notification for %s", safe_url(event.url))
            else:
                if self.enabled:
                    self.delivered += 1
                    LOGGER.info(
                        "Notification sent url=%s %s->%s",
                        safe_url(event.url),
                        event.previous_status.value,
                        event.new_status.value,
                    )
            finally:
                self._queue.task_done()

    async def close(self, grace_seconds: float | None = None) -> None:
        grace = self.config.drain_timeout_seconds if grace_seconds is None else grace_seconds
        if self._task is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=max(0.0, float(grace)))
            except asyncio.TimeoutError:
                LOGGER.warning(
                    "Notifier drain timed out after %ss; %d event(s) not delivered",
                    grace,
                    self._queue.qsize(),
                )

        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
