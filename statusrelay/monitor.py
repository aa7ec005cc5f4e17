"""
Async Source Poller — fetches one status page per tick.

Each SourcePoller tracks a single status page. One tick:
  - Fetches incidents and scheduled maintenances concurrently
  - Merges them and sorts them by creation time
  - Backfills any subscribed destination that has not been backfilled yet
  - Hands every (incident, update) pair to each subscribed destination

A tick that starts while the previous one is still running is skipped,
never queued, so a slow page cannot pile up work.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, List, Optional, Tuple

import aiohttp

from statusrelay.models import BackfillState, Incident, PageCheck
from statusrelay.parser import MalformedPayload, merge_incidents, parse_incidents_payload

if TYPE_CHECKING:
    from statusrelay.destination import DestinationState
    from statusrelay.manager import StatusManager

log = logging.getLogger(__name__)

_ENDPOINTS = (
    ("incidents.json", "incidents"),
    ("scheduled-maintenances.json", "scheduled_maintenances"),
)


def _is_redirect(status: Optional[int]) -> bool:
    return status is not None and 300 <= status <= 400


class SourcePoller:
    """
    Polls a single statuspage.io page.

    Attributes:
        page: Status page base URL.
        last_check: Wall-clock time the last tick started.
    """

    def __init__(self, page: str, manager: "StatusManager") -> None:
        self.page = page.rstrip("/")
        self.key = page
        self.manager = manager
        self.last_check: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def hooks(self) -> List["DestinationState"]:
        return list(self.manager.pages.get(self.key, []))

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def execute(self) -> None:
        """Run one tick, or return at once if the previous tick is running."""
        if self._lock.locked():
            log.debug("Previous check of %s still running, skipping tick", self.page)
            return
        async with self._lock:
            self.last_check = time.time()
            incidents = await self._fetch()
            if incidents is None:
                return
            await self._relay(incidents)

    # ── Fetching ──────────────────────────────────────────

    async def _get(self, endpoint: str, key: str) -> Tuple[Optional[int], List[Incident]]:
        """GET one endpoint. Returns (status or None, parsed incidents)."""
        url = f"{self.page}/api/v2/{endpoint}"
        try:
            async with self.manager.session.get(
                url,
                params={"ts": str(int(time.time() * 1000))},
                headers={"Accept": "application/json"},
                allow_redirects=False,
                timeout=aiohttp.ClientTimeout(total=self.manager.settings.request_timeout),
            ) as resp:
                if resp.status != 200:
                    return resp.status, []
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            log.warning("Fetching %s failed: %r", url, exc)
            return None, []
        try:
            return 200, parse_incidents_payload(data, key)
        except MalformedPayload as exc:
            log.warning("Ignoring malformed %s from %s: %s", endpoint, self.page, exc)
            return None, []

    async def _fetch(self) -> Optional[List[Incident]]:
        (inc_status, incidents), (mnt_status, maintenances) = await asyncio.gather(
            *(self._get(endpoint, key) for endpoint, key in _ENDPOINTS)
        )
        if inc_status == 200 or mnt_status == 200:
            return merge_incidents(incidents, maintenances)

        log.warning(
            "Failed to check status for page %s with status codes %s & %s",
            self.page, inc_status, mnt_status,
        )
        if _is_redirect(inc_status) or _is_redirect(mnt_status):
            valid = await self.manager.check_page_exists(self.key, force=True)
            if valid is PageCheck.INVALID:
                await self.manager.remove_page(self.key)
        return None

    # ── Relaying ──────────────────────────────────────────

    async def _relay(self, incidents: List[Incident]) -> None:
        states = [s for s in self.hooks if s.enabled]
        pending = [s for s in states if s.backfill_state is not BackfillState.COMPLETE]
        if pending:
            results = await asyncio.gather(
                *(s.backfill_incidents(incidents) for s in pending),
                return_exceptions=True,
            )
            for state, result in zip(pending, results):
                if isinstance(result, Exception):
                    log.error("Backfill failed for %s: %r", state.name, result)

        results = await asyncio.gather(
            *(self._evaluate(state, incidents) for state in states),
            return_exceptions=True,
        )
        for state, result in zip(states, results):
            if isinstance(result, Exception):
                log.error("Delivery to %s failed: %r", state.name, result)

    @staticmethod
    async def _evaluate(state: "DestinationState", incidents: List[Incident]) -> None:
        for incident in incidents:
            for update in incident.updates_by_creation():
                if not state.enabled:
                    return
                await state.should_send(incident, update)
