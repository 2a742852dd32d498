from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from functools import partial
from pathlib import Path

import httpx
from dotenv import load_dotenv

from downdetector.config import MonitorConfig, load_config
from downdetector.discord import DiscordNotifier
from downdetector.errors import ConfigError
from downdetector.probe import probe
from downdetector.scheduler import Scheduler
from downdetector.tracker import SiteStateTracker


LOGGER = logging.getLogger("downdetector")

USER_AGENT = "downdetector/0.1 (+uptime monitor)"


def _log_startup(config: MonitorConfig) -> None:
    LOGGER.info("Starting website monitoring...")
    intervals = sorted({t.check_interval_seconds for t in config.targets})
    timeouts = sorted({t.timeout_seconds for t in config.targets})
    LOGGER.info("Check interval: %s seconds", ", ".join(f"{x:g}" for x in intervals) or "n/a")
    LOGGER.info("Timeout: %s seconds", ", ".join(f"{x:g}" for x in timeouts) or "n/a")

    notification = config.notification
    if notification.webhook_url:
        LOGGER.info("Webhook is set, a notification will be sent on DOWN/RECOVERED transitions")
        if notification.mention_id is not None:
            LOGGER.info("Discord ID is set, notifications will be tagged for the user")
        else:
            LOGGER.warning("Discord ID is not set, notifications will not tag any user")
    else:
        LOGGER.warning("Webhook is not set, no notifications will be sent")

    if config.down_after_failures > 1 or config.up_after_successes > 1:
        LOGGER.info(
            "Debounce: down_after_failures=%d up_after_successes=%d",
            config.down_after_failures,
            config.up_after_successes,
        )
    LOGGER.info("Monitoring %d websites", len(config.targets))


class Monitor:
    """
    Wires prober, tracker, scheduler and notifier for one configuration.

    The HTTP client is shared by probes and webhook delivery. Pass one in to
    control transport (tests) or let ``run`` create and close its own.
    """

    def __init__(self, config: MonitorConfig, *, http_client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._http_client = http_client
        self.tracker = SiteStateTracker(
            down_after_failures=config.down_after_failures,
            up_after_successes=config.up_after_successes,
        )
        self.notifier: DiscordNotifier | None = None
        self.scheduler: Scheduler | None = None

    def _wire(self, client: httpx.AsyncClient) -> tuple[Scheduler, DiscordNotifier]:
        notifier = DiscordNotifier(self.config.notification, client)
        self.notifier = notifier
        self.scheduler = Scheduler(
            self.config.targets,
            partial(probe, client),
            self.tracker,
            notifier,
        )
        return self.scheduler, notifier

    async def run(self, stop_event: asyncio.Event, *, once: bool = False) -> None:
        _log_startup(self.config)
        if not self.config.targets:
            LOGGER.warning("No sites configured; nothing to monitor")

        if self._http_client is not None:
            await self._run_with_client(self._http_client, stop_event, once=once)
            return

        async with httpx.AsyncClient(headers={"User-Agent": USER_AGENT}) as client:
            await self._run_with_client(client, stop_event, once=once)

    async def _run_with_client(self, client: httpx.AsyncClient, stop_event: asyncio.Event, *, once: bool) -> None:
        scheduler, notifier = self._wire(client)
        notifier.start()
        try:
            if once:
                await scheduler.run_once()
            elif self.config.targets:
                await scheduler.run(stop_event)
            else:
                await stop_event.wait()
        finally:
            LOGGER.info("Stopping monitor")
            await notifier.close()
            LOGGER.info("Website monitoring stopped gracefully")


async def run_monitor(
    config: MonitorConfig,
    stop_event: asyncio.Event | None = None,
    *,
    once: bool = False,
    install_signal_handlers: bool = True,
    http_client: httpx.AsyncClient | None = None,
) -> Monitor:
    """
    Run the monitor until ``stop_event`` is set, or SIGINT/SIGTERM arrives.

    Signal handlers are removed again before returning.
    """
    if stop_event is None:
        stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    if install_signal_handlers:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except (NotImplementedError, RuntimeError):
                continue
            installed.append(sig)

    monitor = Monitor(config, http_client=http_client)
    try:
        await monitor.run(stop_event, once=once)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
    return monitor


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Website downtime detector with Discord notifications")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to YAML config (default: ~/.config/downdetector/config.yaml, created if missing)",
    )
    parser.add_argument("--once", action="store_true", help="Run one check round and exit")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    # Keep the webhook token (embedded in its URL) out of request logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    load_dotenv()
    try:
        config = load_config(Path(args.config) if args.config else None)
    except ConfigError as e:
        LOGGER.error("Failed to load configuration: %s", e)
        return 2

    asyncio.run(run_monitor(config, once=bool(args.once)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
