"""
Shared fixtures: a recording delivery client and incident builders.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from statusrelay.delivery import DeliveryClient
from statusrelay.manager import StatusManager
from statusrelay.models import (
    AffectedComponent,
    BackfillState,
    Destination,
    DestinationRecord,
    HydratedTarget,
    Incident,
    IncidentUpdate,
    Liveness,
    MentionPolicy,
    MessageRef,
    RelaySettings,
)
from statusrelay.store import DestinationStore

HOOK = "1111/secret-token"
PAGE = "https://status.example.com"


def ago(**kwargs) -> datetime:
    return datetime.now(timezone.utc) - timedelta(**kwargs)


def make_update(
    update_id: str,
    incident_id: str = "inc1",
    status: str = "investigating",
    body: str = "Looking into it",
    created: Optional[datetime] = None,
    updated: Optional[datetime] = None,
    components: Optional[List[AffectedComponent]] = None,
) -> IncidentUpdate:
    created = created or ago(minutes=10)
    return IncidentUpdate(
        id=update_id,
        incident_id=incident_id,
        status=status,
        body=body,
        created_at=created,
        updated_at=updated or created,
        affected_components=components or [],
    )


def make_incident(
    updates: List[IncidentUpdate],
    incident_id: str = "inc1",
    name: str = "Elevated API errors",
    impact: str = "minor",
    created: Optional[datetime] = None,
    scheduled_for: Optional[datetime] = None,
) -> Incident:
    return Incident(
        id=incident_id,
        name=name,
        impact=impact,
        status=updates[-1].status if updates else "investigating",
        created_at=created or (min(u.created_at for u in updates) if updates else ago(hours=1)),
        shortlink="https://stspg.io/abc",
        scheduled_for=scheduled_for,
        updates=updates,
    )


def make_record(
    hook: str = HOOK,
    page: str = PAGE,
    role_id: Optional[str] = None,
    policy: MentionPolicy = MentionPolicy.FIRST_UPDATE,
) -> DestinationRecord:
    return DestinationRecord(
        hook=hook,
        page=page,
        guild_id="g1",
        channel_id="c1",
        user_id="u1",
        role_id=role_id,
        mention_policy=policy,
    )


class FakeDeliveryClient(DeliveryClient):
    """Records every call; errors can be primed per operation."""

    def __init__(self) -> None:
        self.created: List[dict] = []
        self.edited: List[dict] = []
        self.republished: List[MessageRef] = []
        self.verified: List[Destination] = []
        self.history: List[MessageRef] = []
        self.history_calls = 0
        self.liveness = Liveness.ALIVE
        self.create_error: Optional[Exception] = None
        self.edit_error: Optional[Exception] = None
        self.target = None
        self.history_gate: Optional[asyncio.Event] = None
        self._next_id = 5000

    async def create_message(self, destination, embed, token, content=None):
        if self.create_error is not None:
            raise self.create_error
        self._next_id += 1
        self.created.append({"hook": str(destination.hook), "embed": embed, "token": token, "content": content})
        return MessageRef(
            id=str(self._next_id),
            channel_id=destination.target.channel_id,
            webhook_id=destination.hook.id,
            embeds=[embed],
        )

    async def edit_message(self, destination, message_id, embed, token):
        if self.edit_error is not None:
            raise self.edit_error
        self.edited.append({"message_id": message_id, "embed": embed, "token": token})
        return MessageRef(id=message_id, webhook_id=destination.hook.id, embeds=[embed])

    async def fetch_recent_messages(self, destination, limit=100):
        self.history_calls += 1
        if self.history_gate is not None:
            await self.history_gate.wait()
        # yield so concurrent backfills overlap
        await asyncio.sleep(0)
        return list(self.history[:limit])

    async def verify_destination(self, destination):
        self.verified.append(destination)
        return self.liveness

    async def republish(self, destination, message):
        self.republished.append(message)

    async def resolve_target(self, record):
        if self.target is not None:
            return self.target
        return await super().resolve_target(record)


def news_target(role_id: Optional[str] = None) -> HydratedTarget:
    return HydratedTarget(
        guild_id="g1",
        guild_name="Acme",
        channel_id="c1",
        channel_name="status",
        news=True,
        role_id=role_id,
    )


def attach_state(manager: StatusManager, record: Optional[DestinationRecord] = None, target=None, backfilled=True):
    """Register a destination directly and return its DestinationState."""
    record = record or make_record()
    destination = Destination.from_record(record, target)
    manager.hooks[record.hook] = destination
    state = manager.attach(destination)
    if backfilled:
        state.backfill_state = BackfillState.COMPLETE
    return state


@pytest.fixture
def delivery() -> FakeDeliveryClient:
    return FakeDeliveryClient()


@pytest.fixture
def store(tmp_path) -> DestinationStore:
    return DestinationStore(tmp_path / "hooks.db")


@pytest.fixture
def settings() -> RelaySettings:
    return RelaySettings(push_settle_seconds=0)


@pytest.fixture
def manager(settings, delivery, store) -> StatusManager:
    return StatusManager(settings, session=None, delivery=delivery, store=store)
