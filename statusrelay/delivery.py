"""
Delivery client.

Abstracts the chat-platform calls the relay needs: create and edit a
webhook message, read a channel's recent history, check that a webhook
still exists, and crosspost a message. Failures are raised as classified
DeliveryError subclasses so callers can react per error class without
looking at raw HTTP responses.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp

from statusrelay.models import (
    Destination,
    DestinationRecord,
    HydratedTarget,
    Liveness,
    MessageRef,
    Target,
    UnhydratedTarget,
)

log = logging.getLogger(__name__)

# Platform JSON error codes
UNKNOWN_MESSAGE = 10008
UNKNOWN_WEBHOOK = 10015
MISSING_ACCESS = 50001

_NEWS_CHANNEL_TYPE = 5


class DeliveryError(Exception):
    """A delivery call failed."""

    def __init__(self, status: int = 0, code: int = 0, message: str = "") -> None:
        super().__init__(message or f"delivery failed with status {status}")
        self.status = status
        self.code = code
        self.message = message


class DestinationGone(DeliveryError):
    """The webhook or its channel no longer exists."""


class MessageGone(DeliveryError):
    """The message being edited was deleted."""


class ServerError(DeliveryError):
    """The platform answered with a 5xx."""


class RateLimited(DeliveryError):
    def __init__(self, retry_after: float = 0, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.retry_after = retry_after


class TransportError(DeliveryError):
    """The request never got an HTTP answer (connection error, timeout)."""


def classify_error(status: int, code: int = 0, message: str = "", retry_after: float = 0) -> DeliveryError:
    """Map an HTTP status and platform error code to a DeliveryError."""
    if status == 404 and code == UNKNOWN_MESSAGE:
        return MessageGone(status=status, code=code, message=message)
    if status in (401, 404):
        return DestinationGone(status=status, code=code, message=message)
    if status == 429:
        return RateLimited(retry_after=retry_after, status=status, code=code, message=message)
    if status >= 500:
        return ServerError(status=status, code=code, message=message)
    return DeliveryError(status=status, code=code, message=message)


class DeliveryClient(ABC):
    """Abstract base for chat-platform transports."""

    @abstractmethod
    async def create_message(
        self,
        destination: Destination,
        embed: Dict[str, Any],
        token: str,
        content: Optional[str] = None,
    ) -> MessageRef:
        """Post a new message; ``token`` de-duplicates transport retries."""

    @abstractmethod
    async def edit_message(
        self,
        destination: Destination,
        message_id: str,
        embed: Dict[str, Any],
        token: str,
    ) -> MessageRef:
        """Replace the embed of a message posted through the destination."""

    @abstractmethod
    async def fetch_recent_messages(self, destination: Destination, limit: int = 100) -> List[MessageRef]:
        """Most recent messages of the destination's channel, newest first."""

    @abstractmethod
    async def verify_destination(self, destination: Destination) -> Liveness:
        """Check whether the destination's webhook still exists."""

    @abstractmethod
    async def republish(self, destination: Destination, message: MessageRef) -> None:
        """Crosspost a message from an announcement channel."""

    async def resolve_target(self, record: DestinationRecord) -> Target:
        """Resolve channel metadata for a persisted record.

        Transports that cannot look channels up keep the record unhydrated.
        """
        return UnhydratedTarget(
            guild_id=record.guild_id,
            channel_id=record.channel_id,
            role_id=record.role_id,
        )


class DiscordWebhookClient(DeliveryClient):
    """
    DeliveryClient speaking the Discord REST API over a shared aiohttp session.

    Webhook calls need only the webhook id/token. History reads, channel
    lookups and crossposts need a bot token; without one those degrade to
    an empty history, unhydrated targets and skipped crossposts.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        api_base: str = "https://discord.com/api/v10",
        bot_token: Optional[str] = None,
        timeout: float = 30,
    ) -> None:
        self._session = session
        self._api_base = api_base.rstrip("/")
        self._bot_token = bot_token
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    # ── Requests ──────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        bot: bool = False,
    ) -> Any:
        headers: Dict[str, str] = {}
        if bot:
            headers["Authorization"] = f"Bot {self._bot_token}"
        try:
            async with self._session.request(
                method,
                f"{self._api_base}{path}",
                json=json,
                params=params,
                headers=headers,
                timeout=self._timeout,
            ) as resp:
                if resp.status == 204:
                    return None
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = None
                if resp.status >= 400:
                    data = data if isinstance(data, dict) else {}
                    raise classify_error(
                        resp.status,
                        code=int(data.get("code") or 0),
                        message=str(data.get("message") or resp.reason or ""),
                        retry_after=float(data.get("retry_after") or 0),
                    )
                return data
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(message=f"{method} {path}: {exc!r}") from exc

    @staticmethod
    def _message_ref(data: Dict[str, Any]) -> MessageRef:
        return MessageRef(
            id=str(data["id"]),
            channel_id=str(data.get("channel_id") or ""),
            webhook_id=data.get("webhook_id"),
            embeds=list(data.get("embeds") or []),
        )

    # ── DeliveryClient ────────────────────────────────────

    async def create_message(
        self,
        destination: Destination,
        embed: Dict[str, Any],
        token: str,
        content: Optional[str] = None,
    ) -> MessageRef:
        payload: Dict[str, Any] = {
            "embeds": [embed],
            "nonce": token,
            "enforce_nonce": True,
            "allowed_mentions": {"parse": [], "roles": [destination.role_id] if content else []},
        }
        if content:
            payload["content"] = content
        data = await self._request(
            "POST",
            f"/webhooks/{destination.hook}",
            json=payload,
            params={"wait": "true"},
        )
        return self._message_ref(data)

    async def edit_message(
        self,
        destination: Destination,
        message_id: str,
        embed: Dict[str, Any],
        token: str,
    ) -> MessageRef:
        data = await self._request(
            "PATCH",
            f"/webhooks/{destination.hook}/messages/{message_id}",
            json={"embeds": [embed], "nonce": token},
        )
        return self._message_ref(data)

    async def fetch_recent_messages(self, destination: Destination, limit: int = 100) -> List[MessageRef]:
        if not self._bot_token:
            log.debug("No bot token, skipping history read for %s", destination.name)
            return []
        data = await self._request(
            "GET",
            f"/channels/{destination.target.channel_id}/messages",
            params={"limit": str(limit)},
            bot=True,
        )
        return [self._message_ref(m) for m in data or []]

    async def verify_destination(self, destination: Destination) -> Liveness:
        try:
            await self._request("GET", f"/webhooks/{destination.hook}")
        except DestinationGone as exc:
            if exc.status == 404:
                log.debug("Webhook %s is gone: %s", destination.name, exc.message)
                return Liveness.GONE
            raise
        return Liveness.ALIVE

    async def republish(self, destination: Destination, message: MessageRef) -> None:
        if not self._bot_token:
            return
        channel_id = message.channel_id or destination.target.channel_id
        await self._request(
            "POST",
            f"/channels/{channel_id}/messages/{message.id}/crosspost",
            bot=True,
        )

    async def resolve_target(self, record: DestinationRecord) -> Target:
        if not self._bot_token:
            return await super().resolve_target(record)
        try:
            channel = await self._request("GET", f"/channels/{record.channel_id}", bot=True)
            guild = await self._request("GET", f"/guilds/{record.guild_id}", bot=True)
        except DeliveryError as exc:
            log.warning("Could not resolve channel %s: %s", record.channel_id, exc)
            return await super().resolve_target(record)
        return HydratedTarget(
            guild_id=record.guild_id,
            guild_name=guild.get("name") or record.guild_id,
            channel_id=record.channel_id,
            channel_name=channel.get("name") or record.channel_id,
            news=channel.get("type") == _NEWS_CHANNEL_TYPE,
            role_id=record.role_id,
        )
