"""
Main entry point — the StatusRelay application.

Loads configuration, opens the shared aiohttp session, hydrates the
destination registry, then runs the poll scheduler next to the HTTP
front door until interrupted.

Usage:
    python -m statusrelay.main
    statusrelay
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Optional

import aiohttp
from aiohttp import web

from statusrelay import __version__, notifier
from statusrelay.config import load_config
from statusrelay.delivery import DiscordWebhookClient
from statusrelay.manager import StatusManager
from statusrelay.models import RelaySettings
from statusrelay.server import create_app
from statusrelay.store import DestinationStore

log = logging.getLogger(__name__)


class StatusRelay:
    """
    Top-level application.

    Manages the lifecycle of the StatusManager, its scheduler task, the
    shared aiohttp session and the web runner.
    """

    def __init__(self, settings: RelaySettings) -> None:
        self.settings = settings
        self.manager: Optional[StatusManager] = None
        self.scheduler: Optional[asyncio.Task] = None

    async def run(self) -> None:
        """Load destinations, start serving and polling, wait until stopped."""
        notifier.print_banner()

        # Shared session, pooled across all pages and webhooks
        connector = aiohttp.TCPConnector(limit_per_host=5)
        async with aiohttp.ClientSession(
            connector=connector,
            headers={"User-Agent": f"statusrelay/{__version__}"},
        ) as session:
            delivery = DiscordWebhookClient(
                session,
                api_base=self.settings.api_base,
                bot_token=self.settings.bot_token,
                timeout=self.settings.request_timeout,
            )
            store = DestinationStore(self.settings.database)
            self.manager = StatusManager(self.settings, session, delivery, store)

            runner = web.AppRunner(create_app(self.manager))
            await runner.setup()
            site = web.TCPSite(runner, self.settings.host, self.settings.port)
            await site.start()
            notifier.print_listening(self.settings.host, self.settings.port)

            try:
                await self.manager.load_destinations()
                notifier.print_monitoring_start(
                    len(self.manager.pollers),
                    len(self.manager.hooks),
                    self.settings.poll_interval,
                )
                self.scheduler = asyncio.create_task(self.manager.run(), name="scheduler")
                await self.scheduler
            except asyncio.CancelledError:
                pass
            finally:
                await self.manager.shutdown()
                await runner.cleanup()

    def shutdown(self) -> None:
        """Cancel the scheduler; run() then cleans up and returns."""
        if self.scheduler is not None:
            self.scheduler.cancel()


def _handle_signals(relay: StatusRelay, main_task: asyncio.Task, loop: asyncio.AbstractEventLoop) -> None:
    """Register signal handlers for graceful shutdown."""
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: _do_shutdown(relay, main_task))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass


def _do_shutdown(relay: StatusRelay, main_task: asyncio.Task) -> None:
    """Trigger graceful shutdown."""
    notifier.print_shutdown()
    if relay.scheduler is None:
        # still loading destinations
        main_task.cancel()
    relay.shutdown()


async def async_main() -> None:
    """Async entry point."""
    settings = load_config()
    notifier.configure_logging(settings.log_level)
    relay = StatusRelay(settings)

    loop = asyncio.get_running_loop()
    _handle_signals(relay, asyncio.current_task(), loop)
    try:
        await relay.run()
    except asyncio.CancelledError:
        log.info("Relay stopped before it finished loading.")


def main() -> None:
    """Sync entry point."""
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        # Signal handler already printed shutdown message
        sys.exit(0)


if __name__ == "__main__":
    main()
