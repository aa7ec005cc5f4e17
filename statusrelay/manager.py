"""
StatusManager — the relay's orchestrator.

Owns the registry of destinations and the DestinationState instances
grouped per status page, decides which pages are valid (single-flighted
per URL), runs one SourcePoller per polled page on a fixed-interval
scheduler, verifies destination liveness, and routes inbound push
payloads to the right destination.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Set, Union
from urllib.parse import urlsplit

import aiohttp

from statusrelay.delivery import DeliveryClient, DeliveryError
from statusrelay.destination import DestinationState
from statusrelay.embeds import render_update_embed
from statusrelay.models import (
    AffectedComponent,
    Decision,
    Destination,
    DestinationRecord,
    Incident,
    IncidentUpdate,
    Liveness,
    PageCheck,
    RelaySettings,
)
from statusrelay.monitor import SourcePoller
from statusrelay.parser import MalformedPayload, parse_component_update, parse_incident
from statusrelay.store import DestinationStore, StoreError

log = logging.getLogger(__name__)

TIMER_WARNINGS = (15, 60, 100, 150, 300, 600)

STATUSPAGE_MARKER = "SP.pollForChanges('/api/v2/status.json');"
WEBHOOK_MARKER = "updates-dropdown-webhook-btn"

USER_AGENT = "statusrelay/1.0 (+https://github.com/statusrelay/statusrelay)"


class StatusManager:
    """
    Top-level orchestrator.

    Attributes:
        hooks: Registered destinations keyed by ``"<id>/<token>"``.
        pages: DestinationStates per status page URL.
        pollers: Active SourcePollers per polled page URL.
        allows_hooks: Pages known to push their own webhook notifications.
    """

    def __init__(
        self,
        settings: RelaySettings,
        session: aiohttp.ClientSession,
        delivery: DeliveryClient,
        store: DestinationStore,
    ) -> None:
        self.settings = settings
        self.session = session
        self.delivery = delivery
        self.store = store

        self.hooks: Dict[str, Destination] = {}
        self.pages: Dict[str, List[DestinationState]] = {}
        self.pollers: Dict[str, SourcePoller] = {}
        self.allows_hooks: Set[str] = set()

        self._registry_lock = asyncio.Lock()
        self._page_checks: Dict[str, asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()

    # ── Rendering ─────────────────────────────────────────

    def get_update_embed(self, incident: Incident, update: IncidentUpdate) -> dict:
        return render_update_embed(incident, update)

    # ── Page validity ─────────────────────────────────────

    async def check_page_exists(self, page: str, force: bool = False) -> PageCheck:
        """
        Classify a status page, probing it at most once at a time per URL.

        Concurrent callers for the same URL share one in-flight fetch.
        ``force`` skips the cached-valid shortcut for pages being polled,
        used when a poller suspects its page moved.
        """
        if page in self.allows_hooks:
            return PageCheck.WEBHOOK
        parts = urlsplit(page)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            log.error("%s failed to be parsed, ignoring.", page)
            return PageCheck.INVALID
        if page in self.pollers and not force:
            return PageCheck.CACHE

        pending = self._page_checks.get(page)
        if pending is None:
            pending = asyncio.ensure_future(self._fetch_page_check(page))
            self._page_checks[page] = pending
            pending.add_done_callback(lambda _: self._page_checks.pop(page, None))
        return await asyncio.shield(pending)

    async def _fetch_page_check(self, page: str) -> PageCheck:
        log.debug("Checking if %s exists...", page)
        loop = asyncio.get_running_loop()
        timers = [
            loop.call_later(
                seconds,
                log.warning,
                "Fetching %s has taken longer than %d seconds!",
                page,
                seconds,
            )
            for seconds in TIMER_WARNINGS
        ]
        start = loop.time()
        status: Optional[int] = None
        body = ""
        try:
            async with self.session.get(
                page,
                headers={"User-Agent": USER_AGENT},
                timeout=aiohttp.ClientTimeout(total=self.settings.page_check_timeout),
            ) as resp:
                status = resp.status
                if status == 200:
                    body = await resp.text(errors="replace")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            log.warning("Fetching %s failed: %r", page, exc)
        finally:
            for timer in timers:
                timer.cancel()

        elapsed = loop.time() - start
        if elapsed > TIMER_WARNINGS[0]:
            log.warning(
                "Page %s responded with %s in %dms",
                page,
                status if status is not None else "nothing, it didn't respond",
                elapsed * 1000,
            )
        if status != 200 or STATUSPAGE_MARKER not in body:
            return PageCheck.INVALID
        if WEBHOOK_MARKER in body:
            self.allows_hooks.add(page)
            return PageCheck.WEBHOOK
        return PageCheck.VALID

    # ── Registry ──────────────────────────────────────────

    def attach(self, destination: Destination) -> DestinationState:
        """Give a registered destination its DestinationState on its page."""
        state = DestinationState(destination.page, destination, self)
        self.pages.setdefault(destination.page, []).append(state)
        return state

    def _ensure_poller(self, page: str) -> None:
        if page in self.allows_hooks or page in self.pollers:
            return
        self.pollers[page] = SourcePoller(page, self)

    def get_state(self, hook: str) -> Optional[DestinationState]:
        destination = self.hooks.get(hook)
        if destination is None:
            return None
        for state in self.pages.get(destination.page, []):
            if state.destination is destination:
                return state
        return None

    async def prepare_page(self, destination: Destination) -> Optional[DestinationState]:
        """Validate the destination's page and give it a DestinationState."""
        valid = await self.check_page_exists(destination.page)
        if not valid.is_valid:
            log.error("%s failed statuspage validity check, ignoring.", destination.page)
            return None
        async with self._registry_lock:
            return self.attach(destination)

    async def load_destinations(self) -> None:
        """Hydrate the registry from the store and start polling valid pages."""
        log.warning("Loading webhooks...")
        records = await asyncio.to_thread(self.store.load)
        targets = await asyncio.gather(*(self.delivery.resolve_target(r) for r in records))
        async with self._registry_lock:
            self.hooks = {}
            for record, target in zip(records, targets):
                try:
                    destination = Destination.from_record(record, target)
                except ValueError as exc:
                    log.error("Skipping stored destination for %s: %s", record.page, exc)
                    continue
                self.hooks[str(destination.hook)] = destination
        log.info("Loaded %d webhooks, loading pages now...", len(self.hooks))

        for page in self.settings.sources:
            await self.check_page_exists(page)

        prepare = asyncio.gather(*(self.prepare_page(d) for d in list(self.hooks.values())))
        done, _ = await asyncio.wait({prepare}, timeout=120)
        if not done:
            remaining = sorted({d.page for d in self.hooks.values()} - set(self.pages))
            log.warning(
                "Still loading pages after 2 minutes, %d/%d. Remaining pages: %s",
                len(self.pages), len(self.hooks), ", ".join(remaining),
            )
        await prepare

        async with self._registry_lock:
            for page in self.pages:
                self._ensure_poller(page)
        log.info(
            "Loaded %d pages with %d allowing webhooks.",
            len(self.pages), len(self.allows_hooks),
        )
        for hook in list(self.hooks):
            await self.check_hook_exists(hook)
        log.info("Finished loading webhooks!")

    async def add_destination(self, record: DestinationRecord) -> bool:
        """Persist and register a destination, starting its page's poller."""
        destination = Destination.from_record(record, await self.delivery.resolve_target(record))
        valid = await self.check_page_exists(record.page)
        if not valid.is_valid:
            return False
        try:
            inserted = await asyncio.to_thread(self.store.insert, record)
        except StoreError as exc:
            log.error("Failed to store webhook for %s: %s", record.page, exc)
            return False
        if not inserted:
            return False
        async with self._registry_lock:
            self.hooks[record.hook] = destination
            self.attach(destination)
            self._ensure_poller(record.page)
        log.info(
            "Added webhook for %s in %s, created by %s",
            record.page, destination.name, record.user_id,
        )
        return True

    async def remove_destination(self, hook: str) -> bool:
        """Delete a destination from the store and the live registry."""
        try:
            deleted = await asyncio.to_thread(self.store.delete, hook)
        except StoreError as exc:
            log.error("Failed to delete hook %s: %s", hook, exc)
            return False
        async with self._registry_lock:
            self._unregister(hook)
        return deleted

    def _unregister(self, hook: str) -> None:
        destination = self.hooks.pop(hook, None)
        if destination is None:
            return
        states = self.pages.get(destination.page, [])
        for state in states:
            if state.destination is destination:
                state.disable()
        remaining = [s for s in states if s.destination is not destination]
        if destination.page in self.pages:
            self.pages[destination.page] = remaining

    async def remove_page(self, page: str) -> None:
        """Stop polling an invalid page. Its destinations stay registered."""
        async with self._registry_lock:
            poller = self.pollers.pop(page, None)
            for state in self.pages.pop(page, []):
                state.disable()
        if poller is not None:
            log.warning("Stopped polling %s, it no longer looks like a status page.", page)

    # ── Liveness ──────────────────────────────────────────

    async def check_hook_exists(self, hook: str) -> None:
        """
        Check a destination and remove it for good if the platform says
        it is gone: disable its state, unsubscribe it, delete its record.
        """
        destination = self.hooks.get(hook)
        if destination is None:
            return
        try:
            liveness = await self.delivery.verify_destination(destination)
        except DeliveryError as exc:
            log.warning("Could not verify webhook %s: %s", destination.name, exc)
            return
        if liveness is not Liveness.GONE:
            return

        log.warning(
            "Deleting webhook %s for %s due to it no longer existing",
            destination.hook.masked, destination.name,
        )
        try:
            await asyncio.to_thread(self.store.delete, hook)
        except StoreError as exc:
            log.error("Failed to delete hook %s! %s", destination.hook.masked, exc)
            return
        async with self._registry_lock:
            self._unregister(hook)

    # ── Push notifications ────────────────────────────────

    @staticmethod
    def parse_push(payload: object) -> Union[Incident, AffectedComponent]:
        """
        Validate a pushed payload before anything is relayed.

        Raises:
            MalformedPayload: the payload holds neither an incident with
                updates nor a component update.
        """
        if not isinstance(payload, dict):
            raise MalformedPayload("payload must be an object")
        if "component_update" in payload:
            return parse_component_update(payload)
        if "incident" in payload:
            incident = parse_incident(payload["incident"])
            if not incident.updates:
                raise MalformedPayload("incident has no updates")
            return incident
        raise MalformedPayload("payload has neither incident nor component_update")

    async def relay_push(self, hook: str, event: Union[Incident, AffectedComponent]) -> Decision:
        """Relay a parsed push payload to the destination it was sent to."""
        state = self.get_state(hook)
        if state is None:
            log.debug("Push payload for an unknown or unsubscribed webhook, dropping")
            return Decision.SKIP
        if isinstance(event, Incident):
            return await state.relay_pushed_incident(event)
        # let the matching incident update land first
        await asyncio.sleep(self.settings.push_settle_seconds)
        return await state.relay_component_update(event)

    async def handle_push(self, hook: str, payload: object) -> Decision:
        return await self.relay_push(hook, self.parse_push(payload))

    # ── Scheduler ─────────────────────────────────────────

    def tick(self) -> None:
        """Start one poll of every active page without waiting for it."""
        for poller in list(self.pollers.values()):
            task = asyncio.create_task(poller.execute(), name=f"poll-{poller.page}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def run(self) -> None:
        """Drive poll ticks on a fixed interval until cancelled."""
        while True:
            self.tick()
            await asyncio.sleep(self.settings.poll_interval)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    def snapshot(self, include_pages: bool = True, include_hooks: bool = True) -> dict:
        """Read-only view of the registry for the listing endpoint."""
        return {
            "pages": [
                {"url": page, "hooks": [s.snapshot() for s in states]}
                for page, states in self.pages.items()
            ]
            if include_pages
            else [],
            "hooks": [d.to_dict() for d in self.hooks.values()] if include_hooks else [],
        }
