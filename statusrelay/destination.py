"""
Destination state — the per (page, destination) delivery core.

Each DestinationState decides, for every observed incident update,
whether to post it, edit a message already carrying it, or ignore it.
It owns the map from (incident id, update id) to the delivered message
and reconciles that map once against the destination's real history
(backfill) before it is allowed to send anything.

All decide-and-deliver work for one destination runs under a single
asyncio.Lock, so concurrent poll cycles and push payloads never race on
the message map.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Awaitable, Dict, List, Optional, Set, Tuple

from statusrelay.delivery import (
    MISSING_ACCESS,
    DeliveryClient,
    DeliveryError,
    DestinationGone,
    MessageGone,
    ServerError,
)
from statusrelay.embeds import CanonicalEmbed, parse_footer
from statusrelay.models import (
    AffectedComponent,
    BackfillState,
    Decision,
    DeliveredMessage,
    Destination,
    Incident,
    IncidentUpdate,
    MentionPolicy,
    MessageRef,
)

if TYPE_CHECKING:
    from statusrelay.manager import StatusManager

log = logging.getLogger(__name__)

MessageKey = Tuple[str, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DestinationState:
    """
    Delivery state of one destination subscribed to one status page.

    Attributes:
        page: Status page base URL.
        destination: Registry entry this state delivers to.
        ignore: Update ids permanently skipped (stale or superseded).
        messages: Delivered messages keyed by (incident id, update id).
        last_update: Last delivered update id per incident.
        backfill_state: not-started | running | complete.
    """

    def __init__(self, page: str, destination: Destination, manager: "StatusManager") -> None:
        self.page = page
        self.destination = destination
        self.manager = manager
        self.enabled = True

        self.ignore: Set[str] = set()
        self.messages: Dict[MessageKey, DeliveredMessage] = {}
        self.last_update: Dict[str, str] = {}
        self.last_push: Optional[Tuple[Incident, IncidentUpdate]] = None

        self.backfill_state = BackfillState.NOT_STARTED
        self._backfill_task: Optional[asyncio.Future] = None
        self._lock = asyncio.Lock()
        self._background: Set[asyncio.Task] = set()

        settings = manager.settings
        self.stale_after = timedelta(hours=settings.stale_after_hours)
        self.fresh_window = timedelta(hours=settings.fresh_window_hours)

    @property
    def name(self) -> str:
        return self.destination.name

    @property
    def delivery(self) -> DeliveryClient:
        return self.manager.delivery

    def disable(self) -> None:
        self.enabled = False

    # ── Message map ───────────────────────────────────────

    def _live_message(self, incident_id: str, update_id: str) -> Optional[DeliveredMessage]:
        entry = self.messages.get((incident_id, update_id))
        if entry is None or entry.deleted:
            return None
        return entry

    def _stream_message(self, incident_id: str) -> Optional[DeliveredMessage]:
        """The live message carrying the incident's last delivered update."""
        update_id = self.last_update.get(incident_id)
        if update_id is None:
            return None
        return self._live_message(incident_id, update_id)

    def _record(self, incident: Incident, update: IncidentUpdate, ref: MessageRef, embed: dict) -> None:
        self.messages[(incident.id, update.id)] = DeliveredMessage(
            incident_id=incident.id,
            update_id=update.id,
            message_id=ref.id,
            embed=embed,
        )
        self.last_update[incident.id] = update.id

    @staticmethod
    def _unchanged(entry: DeliveredMessage, embed: dict) -> bool:
        return CanonicalEmbed.from_embed(entry.embed) == CanonicalEmbed.from_embed(embed)

    # ── Decision ──────────────────────────────────────────

    def decide(self, incident: Incident, update: IncidentUpdate) -> Tuple[Decision, Optional[DeliveredMessage]]:
        """
        Decide what to do with one update, without touching the network.

        Stale and superseded updates are added to the ignore set as a
        side effect, so they stay skipped on every later poll.
        """
        if not self.enabled or update.id in self.ignore:
            return Decision.SKIP, None
        if self.backfill_state is not BackfillState.COMPLETE:
            return Decision.SKIP, None

        embed = self.manager.get_update_embed(incident, update)
        existing = self._live_message(incident.id, update.id)
        if existing is not None:
            if self._unchanged(existing, embed):
                return Decision.SKIP, existing
            return Decision.EDIT, existing

        if _utcnow() - update.created_at > self.stale_after:
            self.ignore.add(update.id)
            return Decision.SKIP, None

        latest = incident.latest_revision()
        if latest is not None and latest > update.revised_at:
            self.ignore.add(update.id)
            return Decision.SKIP, None

        return Decision.SEND, None

    async def should_send(self, incident: Incident, update: IncidentUpdate) -> Decision:
        """Decide for one update and carry the decision out."""
        async with self._lock:
            decision, existing = self.decide(incident, update)
            if decision is Decision.EDIT:
                return await self._edit_entry(existing, incident, update)
            if decision is Decision.SEND:
                return await self._send_incident_update(incident, update)
            return Decision.SKIP

    # ── Sending ───────────────────────────────────────────

    async def send_incident_update(self, incident: Incident, update: IncidentUpdate) -> Decision:
        async with self._lock:
            return await self._send_incident_update(incident, update)

    async def _send_incident_update(self, incident: Incident, update: IncidentUpdate) -> Decision:
        embed = self.manager.get_update_embed(incident, update)
        existing = self._live_message(incident.id, update.id)

        if self.last_update.get(incident.id) == update.id:
            if existing is None or self._unchanged(existing, embed):
                return Decision.SKIP
            return await self._edit_entry(existing, incident, update)
        if existing is not None:
            return Decision.SKIP

        # decayed queue items after a restart
        if update.updated_at is None and _utcnow() - update.created_at > self.fresh_window:
            return Decision.SKIP

        dest = self.destination
        stream = self._stream_message(incident.id)
        if stream is not None and dest.mention_policy is MentionPolicy.FIRST_UPDATE:
            return await self._continue_stream(stream, incident, update, embed)

        ordered = [u.id for u in incident.updates_by_creation()]
        is_first = bool(ordered) and ordered[0] == update.id
        content = None
        if dest.role_id and (dest.mention_policy is MentionPolicy.EVERY_UPDATE or is_first):
            content = f"<@&{dest.role_id}>"

        try:
            ref = await self.delivery.create_message(dest, embed, token=update.id, content=content)
        except DestinationGone:
            log.warning("Webhook for %s looks gone, verifying...", self.name)
            self._spawn(self.manager.check_hook_exists(str(dest.hook)))
            return Decision.SKIP
        except DeliveryError as exc:
            log.warning(
                "Failed to send update %s/%s to %s: %s",
                incident.id, update.id, self.name, exc,
            )
            return Decision.SKIP

        self._record(incident, update, ref, embed)
        log.info(
            "Sent update for %s %s for page %s to %s",
            incident.kind, incident.name, self.page, self.name,
        )
        if dest.target.supports_crosspost:
            self._spawn(self._crosspost(ref))
        return Decision.SEND

    async def _continue_stream(
        self,
        stream: DeliveredMessage,
        incident: Incident,
        update: IncidentUpdate,
        embed: dict,
    ) -> Decision:
        """Move the incident's existing message on to a newer update."""
        ref = await self._edit_message(stream, embed, update.id)
        if ref is None:
            return Decision.SKIP
        del self.messages[(stream.incident_id, stream.update_id)]
        self._record(incident, update, ref, embed)
        log.info(
            "Moved %s %s on to update %s for page %s in %s",
            incident.kind, incident.name, update.id, self.page, self.name,
        )
        return Decision.EDIT

    async def _crosspost(self, ref: MessageRef) -> None:
        log.debug("Crossposting incident update for %s...", self.name)
        try:
            await self.delivery.republish(self.destination, ref)
        except DeliveryError as exc:
            if exc.code != MISSING_ACCESS:
                log.error("Failed to crosspost update for %s due to %s", self.name, exc)

    # ── Editing ───────────────────────────────────────────

    async def update_incident_message(self, incident: Incident, update: IncidentUpdate) -> Decision:
        """Re-render an already delivered update and edit its message."""
        async with self._lock:
            entry = self._live_message(incident.id, update.id)
            if entry is None:
                return Decision.SKIP
            return await self._edit_entry(entry, incident, update)

    async def _edit_entry(self, entry: DeliveredMessage, incident: Incident, update: IncidentUpdate) -> Decision:
        embed = self.manager.get_update_embed(incident, update)
        ref = await self._edit_message(entry, embed, update.id)
        if ref is None:
            return Decision.SKIP
        entry.message_id = ref.id
        entry.embed = embed
        entry.deleted = False
        log.info(
            "Edited update for %s %s for page %s in %s",
            incident.kind, incident.name, self.page, self.name,
        )
        return Decision.EDIT

    async def _edit_message(self, entry: DeliveredMessage, embed: dict, token: str) -> Optional[MessageRef]:
        """Edit a delivered message, handling each failure class. None on failure."""
        try:
            return await self.delivery.edit_message(self.destination, entry.message_id, embed, token=token)
        except MessageGone:
            log.warning("Message %s not found, marking it deleted...", entry.message_id)
            entry.deleted = True
            if self.last_update.get(entry.incident_id) == entry.update_id:
                del self.last_update[entry.incident_id]
        except DestinationGone:
            self._spawn(self.manager.check_hook_exists(str(self.destination.hook)))
        except ServerError as exc:
            log.error(
                "Encountered %s on PATCH message %s for %s",
                exc.status, entry.message_id, self.name,
            )
        except DeliveryError as exc:
            log.warning(
                "Failed to edit message %s for %s/%s for %s: %s",
                entry.message_id, entry.incident_id, entry.update_id, self.name, exc,
            )
        return None

    # ── Backfill ──────────────────────────────────────────

    async def backfill_incidents(self, incidents: List[Incident]) -> None:
        """
        Reconcile the destination's recent history with ``incidents``.

        Runs once per state; concurrent and later callers await the same
        run instead of starting another one.
        """
        if self._backfill_task is None:
            self.backfill_state = BackfillState.RUNNING
            self._backfill_task = asyncio.ensure_future(self._backfill(incidents))
        await asyncio.shield(self._backfill_task)

    async def _backfill(self, incidents: List[Incident]) -> None:
        try:
            await self._reconcile(incidents)
        finally:
            self.backfill_state = BackfillState.COMPLETE

    async def _reconcile(self, incidents: List[Incident]) -> None:
        dest = self.destination
        try:
            history = await self.delivery.fetch_recent_messages(dest, limit=self.manager.settings.backfill_limit)
        except DeliveryError as exc:
            log.warning("Could not read history for %s, skipping backfill: %s", self.name, exc)
            return

        by_id = {incident.id: incident for incident in incidents}
        seeded: List[DeliveredMessage] = []
        # history is newest first, so the first match per pair wins
        for message in history:
            if message.webhook_id != dest.hook.id or not message.embeds:
                continue
            ids = parse_footer(message.embeds[0])
            # messages for incidents no longer listed are left alone
            if ids is None or ids[0] not in by_id or ids in self.messages:
                continue
            entry = DeliveredMessage(
                incident_id=ids[0],
                update_id=ids[1],
                message_id=message.id,
                embed=message.embeds[0],
            )
            self.messages[ids] = entry
            self.last_update.setdefault(ids[0], ids[1])
            seeded.append(entry)

        for entry in seeded:
            incident = by_id[entry.incident_id]
            update = incident.get_update(entry.update_id)
            if update is None:
                continue
            embed = self.manager.get_update_embed(incident, update)
            if entry.deleted or self._unchanged(entry, embed):
                continue
            ref = await self._edit_message(entry, embed, update.id)
            if ref is not None:
                entry.embed = embed

        log.info(
            "Successfully backfilled %d incidents for %s - %s (%d messages matched)",
            len(incidents), self.page, self.name, len(seeded),
        )

    # ── Push notifications ────────────────────────────────

    async def _await_backfill(self) -> None:
        """Hold a pushed payload until a running backfill has seeded the map."""
        task = self._backfill_task
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def relay_pushed_incident(self, incident: Incident) -> Decision:
        """Deliver the newest update of an incident pushed by the page."""
        update = incident.updates[0]
        await self._await_backfill()
        async with self._lock:
            if not self.enabled:
                return Decision.SKIP
            existing = self._live_message(incident.id, update.id)
            if existing is not None:
                embed = self.manager.get_update_embed(incident, update)
                if self._unchanged(existing, embed):
                    decision = Decision.SKIP
                else:
                    decision = await self._edit_entry(existing, incident, update)
            else:
                decision = await self._send_incident_update(incident, update)
            if self._live_message(incident.id, update.id) is not None:
                self.last_push = (incident, update)
            return decision

    async def relay_component_update(self, component: AffectedComponent) -> Decision:
        """Apply a pushed component status change to the last pushed update."""
        await self._await_backfill()
        async with self._lock:
            if not self.enabled or self.last_push is None:
                return Decision.SKIP
            incident, update = self.last_push
            entry = self._live_message(incident.id, update.id)
            if entry is None:
                return Decision.SKIP

            components = list(update.affected_components)
            for index, current in enumerate(components):
                if current.code == component.code:
                    if current.new_status == component.new_status:
                        return Decision.SKIP
                    components[index] = replace(
                        current,
                        old_status=component.old_status,
                        new_status=component.new_status,
                    )
                    break
            else:
                components.append(component)

            update = replace(update, affected_components=components)
            incident = replace(
                incident,
                updates=[update if u.id == update.id else u for u in incident.updates],
            )
            self.last_push = (incident, update)
            return await self._edit_entry(entry, incident, update)

    # ── Background work ───────────────────────────────────

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for crossposts and liveness checks started by this state."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def snapshot(self) -> dict:
        return {
            "hook": self.destination.hook.masked,
            "backfilled": self.backfill_state.value,
            "enabled": self.enabled,
            "lastUpdate": dict(self.last_update),
            "messages": [asdict(m) for m in self.messages.values()],
        }
