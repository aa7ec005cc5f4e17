"""
Data models for the status relay.

Defines structured representations for status-page incidents, the
destinations they are relayed to, and the messages already delivered,
keeping the reconciliation core type-safe and free of SDK objects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Union


class MentionPolicy(str, Enum):
    """When the destination's alert role gets mentioned."""

    FIRST_UPDATE = "first-update"
    EVERY_UPDATE = "every-update"


class BackfillState(str, Enum):
    NOT_STARTED = "not-started"
    RUNNING = "running"
    COMPLETE = "complete"


class PageCheck(str, Enum):
    """Outcome of a status page validity check."""

    INVALID = "invalid"
    VALID = "valid"
    WEBHOOK = "webhook"  # page offers its own webhook subscriptions
    CACHE = "cache"  # already polled, no fetch needed

    @property
    def is_valid(self) -> bool:
        return self is not PageCheck.INVALID


class Decision(str, Enum):
    """What a destination decided to do with one incident update."""

    SKIP = "skip"
    SEND = "send"
    EDIT = "edit"


class Liveness(str, Enum):
    ALIVE = "alive"
    GONE = "gone"


# ─── Incidents ────────────────────────────────────────────────


@dataclass(frozen=True)
class AffectedComponent:
    """A component whose status changed as part of an update."""

    code: str
    name: str
    old_status: str
    new_status: str


@dataclass(frozen=True)
class IncidentUpdate:
    """
    One chronological revision of an incident.

    Attributes:
        id: Unique identifier within the incident.
        incident_id: Owning incident.
        status: investigating | identified | monitoring | resolved |
            scheduled | in_progress | completed.
        body: Free text written by the page operator.
        created_at: When the update was posted.
        updated_at: When the update was last revised, if ever.
        affected_components: Component transitions attached to it.
    """

    id: str
    incident_id: str
    status: str
    body: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    affected_components: List[AffectedComponent] = field(default_factory=list)

    @property
    def revised_at(self) -> datetime:
        return self.updated_at or self.created_at


@dataclass(frozen=True)
class Incident:
    """
    An incident or scheduled maintenance as returned by one poll.

    Superseded wholesale by the next poll's copy with the same id.
    """

    id: str
    name: str
    impact: str
    status: str
    created_at: datetime
    shortlink: str = ""
    updated_at: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    scheduled_until: Optional[datetime] = None
    updates: List[IncidentUpdate] = field(default_factory=list)

    @property
    def is_maintenance(self) -> bool:
        return self.scheduled_for is not None

    @property
    def kind(self) -> str:
        return "maintenance" if self.is_maintenance else "incident"

    def updates_by_creation(self) -> List[IncidentUpdate]:
        return sorted(self.updates, key=lambda u: u.created_at)

    def latest_revision(self) -> Optional[datetime]:
        """Maximum update timestamp across all of the incident's updates."""
        if not self.updates:
            return None
        return max(u.revised_at for u in self.updates)

    def get_update(self, update_id: str) -> Optional[IncidentUpdate]:
        for update in self.updates:
            if update.id == update_id:
                return update
        return None


# ─── Delivery ─────────────────────────────────────────────────


@dataclass(frozen=True)
class MessageRef:
    """A message as reported back by the chat platform."""

    id: str
    channel_id: str = ""
    webhook_id: Optional[str] = None
    embeds: List[dict] = field(default_factory=list)


@dataclass
class DeliveredMessage:
    """Maps one (incident, update) pair to the message carrying it."""

    incident_id: str
    update_id: str
    message_id: str
    embed: Optional[dict]
    deleted: bool = False


@dataclass(frozen=True)
class HookRef:
    """Webhook credentials, stored as ``"<id>/<token>"``."""

    id: str
    token: str

    @classmethod
    def parse(cls, value: str) -> "HookRef":
        hook_id, sep, token = value.partition("/")
        if not sep or not hook_id or not token:
            raise ValueError(f"invalid webhook reference: {value!r}")
        return cls(id=hook_id, token=token)

    @property
    def masked(self) -> str:
        return f"{self.id}/{'*' * len(self.token)}"

    def __str__(self) -> str:
        return f"{self.id}/{self.token}"


@dataclass(frozen=True)
class HydratedTarget:
    """A destination channel whose metadata was resolved on the platform."""

    guild_id: str
    guild_name: str
    channel_id: str
    channel_name: str
    news: bool = False
    role_id: Optional[str] = None

    @property
    def label(self) -> Optional[str]:
        return f"{self.guild_name}/#{self.channel_name}"

    @property
    def supports_crosspost(self) -> bool:
        return self.news


@dataclass(frozen=True)
class UnhydratedTarget:
    """A destination channel known only by its ids."""

    guild_id: str
    channel_id: str
    role_id: Optional[str] = None

    @property
    def label(self) -> Optional[str]:
        return None

    @property
    def supports_crosspost(self) -> bool:
        return False


Target = Union[HydratedTarget, UnhydratedTarget]


@dataclass(frozen=True)
class DestinationRecord:
    """A destination row as persisted by the store."""

    hook: str
    page: str
    guild_id: str
    channel_id: str
    user_id: str
    role_id: Optional[str] = None
    mention_policy: MentionPolicy = MentionPolicy.FIRST_UPDATE


@dataclass
class Destination:
    """A registered delivery target, as held in the live registry."""

    hook: HookRef
    page: str
    user_id: str
    target: Target
    mention_policy: MentionPolicy = MentionPolicy.FIRST_UPDATE
    disabled: bool = False

    @classmethod
    def from_record(cls, record: DestinationRecord, target: Optional[Target] = None) -> "Destination":
        if target is None:
            target = UnhydratedTarget(
                guild_id=record.guild_id,
                channel_id=record.channel_id,
                role_id=record.role_id,
            )
        return cls(
            hook=HookRef.parse(record.hook),
            page=record.page,
            user_id=record.user_id,
            target=target,
            mention_policy=record.mention_policy,
        )

    @property
    def name(self) -> str:
        """Log-safe display name, never exposing the token."""
        return self.target.label or self.hook.masked

    @property
    def role_id(self) -> Optional[str]:
        return self.target.role_id

    def to_dict(self) -> Dict[str, object]:
        return {
            "url": self.hook.masked,
            "page": self.page,
            "user": self.user_id,
            "guild": self.target.guild_id,
            "channel": self.target.channel_id,
            "name": self.name,
            "role": {
                "id": self.role_id,
                "alertForAll": self.mention_policy is MentionPolicy.EVERY_UPDATE,
            }
            if self.role_id
            else {},
            "disabled": self.disabled,
        }


# ─── Settings ─────────────────────────────────────────────────


@dataclass
class RelaySettings:
    """Global relay settings."""

    log_level: str = "INFO"
    poll_interval: float = 30
    request_timeout: float = 30
    page_check_timeout: float = 900
    stale_after_hours: float = 50
    fresh_window_hours: float = 6
    backfill_limit: int = 100
    database: str = "statusrelay.db"
    api_base: str = "https://discord.com/api/v10"
    bot_token: Optional[str] = None
    auth_token: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 10000
    push_settle_seconds: float = 2.5
    sources: List[str] = field(default_factory=list)
