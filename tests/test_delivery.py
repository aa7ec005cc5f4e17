"""
Tests for error classification and the Discord webhook client, run
against a small fake of the platform's REST API.
"""

import asyncio
import inspect

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from conftest import HOOK, make_record
from statusrelay.delivery import (
    DeliveryClient,
    DeliveryError,
    DestinationGone,
    DiscordWebhookClient,
    MessageGone,
    RateLimited,
    ServerError,
    TransportError,
    classify_error,
)
from statusrelay.models import Destination, HydratedTarget, Liveness, MessageRef, UnhydratedTarget

CALLS = web.AppKey("calls", list)
EMBED = {"title": "API errors", "footer": {"text": "Incident ID: inc1 | Update ID: u1"}}


class TestClassifyError:
    def test_unknown_message(self):
        assert isinstance(classify_error(404, 10008), MessageGone)

    def test_unknown_webhook(self):
        assert isinstance(classify_error(404, 10015), DestinationGone)

    def test_unauthorized(self):
        assert isinstance(classify_error(401), DestinationGone)

    def test_rate_limited(self):
        error = classify_error(429, retry_after=1.5)
        assert isinstance(error, RateLimited)
        assert error.retry_after == 1.5

    def test_server_error(self):
        error = classify_error(502, message="Bad Gateway")
        assert isinstance(error, ServerError)
        assert error.status == 502
        assert str(error) == "Bad Gateway"

    def test_other_client_error(self):
        error = classify_error(400, 50035)
        assert type(error) is DeliveryError
        assert error.code == 50035


def platform_app(webhook_status=200, message_status=200, message_code=0):
    """Fake platform API. ``app[CALLS]`` records (method, path, query, json, auth)."""
    app = web.Application()
    app[CALLS] = []

    async def record(request):
        body = await request.json() if request.can_read_body else None
        request.app[CALLS].append(
            (request.method, request.path, dict(request.query), body, request.headers.get("Authorization"))
        )
        return body

    async def execute(request):
        body = await record(request)
        return web.json_response({
            "id": "777",
            "channel_id": "c1",
            "webhook_id": request.match_info["id"],
            "embeds": body["embeds"],
        })

    async def edit(request):
        body = await record(request)
        if message_status != 200:
            return web.json_response({"code": message_code, "message": "nope"}, status=message_status)
        return web.json_response({
            "id": request.match_info["message"],
            "webhook_id": request.match_info["id"],
            "embeds": body["embeds"],
        })

    async def webhook(request):
        await record(request)
        if webhook_status != 200:
            return web.json_response({"code": 10015, "message": "Unknown Webhook"}, status=webhook_status)
        return web.json_response({"id": request.match_info["id"], "type": 1})

    async def history(request):
        await record(request)
        return web.json_response([
            {"id": "902", "channel_id": "c1", "webhook_id": "1111", "embeds": [EMBED]},
            {"id": "901", "channel_id": "c1", "author": {"id": "42"}, "embeds": []},
        ])

    async def crosspost(request):
        await record(request)
        return web.json_response({"id": request.match_info["message"]})

    async def channel(request):
        await record(request)
        return web.json_response({"id": "c1", "name": "status", "type": 5})

    async def guild(request):
        await record(request)
        return web.json_response({"id": "g1", "name": "Acme"})

    app.router.add_post("/webhooks/{id}/{token}", execute)
    app.router.add_get("/webhooks/{id}/{token}", webhook)
    app.router.add_patch("/webhooks/{id}/{token}/messages/{message}", edit)
    app.router.add_get("/channels/{channel}/messages", history)
    app.router.add_post("/channels/{channel}/messages/{message}/crosspost", crosspost)
    app.router.add_get("/channels/{channel}", channel)
    app.router.add_get("/guilds/{guild}", guild)
    return app


async def against(app, scenario, bot_token=None):
    """Run ``scenario(client)`` with a client pointed at ``app``."""
    async with TestServer(app) as server, aiohttp.ClientSession() as session:
        client = DiscordWebhookClient(session, api_base=str(server.make_url("")), bot_token=bot_token, timeout=5)
        return await scenario(client)


def destination(role_id=None):
    return Destination.from_record(make_record(role_id=role_id))


class TestDiscordWebhookClient:
    @pytest.mark.parametrize(
        "name",
        ["create_message", "edit_message", "fetch_recent_messages", "verify_destination", "republish", "resolve_target"],
    )
    def test_overrides_keep_base_signature(self, name):
        override = inspect.signature(getattr(DiscordWebhookClient, name))
        base = inspect.signature(getattr(DeliveryClient, name))
        assert override == base

    def test_create_message(self):
        app = platform_app()

        async def scenario(client):
            return await client.create_message(destination("r1"), EMBED, token="u1", content="<@&r1>")

        ref = asyncio.run(against(app, scenario))
        assert ref == MessageRef(id="777", channel_id="c1", webhook_id="1111", embeds=[EMBED])
        method, path, query, body, auth = app[CALLS][0]
        assert (method, path) == ("POST", f"/webhooks/{HOOK}")
        assert query == {"wait": "true"}
        assert body["nonce"] == "u1"
        assert body["content"] == "<@&r1>"
        assert body["allowed_mentions"]["roles"] == ["r1"]
        assert auth is None

    def test_create_without_mention(self):
        app = platform_app()

        async def scenario(client):
            return await client.create_message(destination("r1"), EMBED, token="u1")

        asyncio.run(against(app, scenario))
        body = app[CALLS][0][3]
        assert "content" not in body
        assert body["allowed_mentions"]["roles"] == []

    def test_edit_message(self):
        app = platform_app()

        async def scenario(client):
            return await client.edit_message(destination(), "900", EMBED, token="u2")

        ref = asyncio.run(against(app, scenario))
        assert ref.id == "900"
        assert app[CALLS][0][:2] == ("PATCH", f"/webhooks/{HOOK}/messages/900")

    def test_edit_deleted_message(self):
        app = platform_app(message_status=404, message_code=10008)

        async def scenario(client):
            return await client.edit_message(destination(), "900", EMBED, token="u2")

        with pytest.raises(MessageGone):
            asyncio.run(against(app, scenario))

    def test_edit_server_error(self):
        app = platform_app(message_status=503)

        async def scenario(client):
            return await client.edit_message(destination(), "900", EMBED, token="u2")

        with pytest.raises(ServerError):
            asyncio.run(against(app, scenario))

    def test_verify_alive(self):
        async def scenario(client):
            return await client.verify_destination(destination())

        assert asyncio.run(against(platform_app(), scenario)) is Liveness.ALIVE

    def test_verify_gone(self):
        async def scenario(client):
            return await client.verify_destination(destination())

        assert asyncio.run(against(platform_app(webhook_status=404), scenario)) is Liveness.GONE

    def test_verify_unauthorized_propagates(self):
        async def scenario(client):
            return await client.verify_destination(destination())

        with pytest.raises(DestinationGone):
            asyncio.run(against(platform_app(webhook_status=401), scenario))

    def test_history_needs_bot_token(self):
        app = platform_app()

        async def scenario(client):
            return await client.fetch_recent_messages(destination())

        assert asyncio.run(against(app, scenario)) == []
        assert app[CALLS] == []

    def test_history_with_bot_token(self):
        app = platform_app()

        async def scenario(client):
            return await client.fetch_recent_messages(destination(), limit=100)

        messages = asyncio.run(against(app, scenario, bot_token="bot"))
        assert [m.id for m in messages] == ["902", "901"]
        assert messages[0].webhook_id == "1111"
        assert messages[1].webhook_id is None
        _, path, query, _, auth = app[CALLS][0]
        assert path == "/channels/c1/messages"
        assert query == {"limit": "100"}
        assert auth == "Bot bot"

    def test_crosspost(self):
        app = platform_app()

        async def scenario(client):
            await client.republish(destination(), MessageRef(id="777", channel_id="c1"))

        asyncio.run(against(app, scenario, bot_token="bot"))
        assert app[CALLS][0][:2] == ("POST", "/channels/c1/messages/777/crosspost")

    def test_crosspost_skipped_without_bot_token(self):
        app = platform_app()

        async def scenario(client):
            await client.republish(destination(), MessageRef(id="777", channel_id="c1"))

        asyncio.run(against(app, scenario))
        assert app[CALLS] == []

    def test_resolve_target(self):
        async def scenario(client):
            return await client.resolve_target(make_record(role_id="r1"))

        target = asyncio.run(against(platform_app(), scenario, bot_token="bot"))
        assert isinstance(target, HydratedTarget)
        assert target.label == "Acme/#status"
        assert target.supports_crosspost
        assert target.role_id == "r1"

    def test_resolve_target_without_bot_token(self):
        async def scenario(client):
            return await client.resolve_target(make_record())

        target = asyncio.run(against(platform_app(), scenario))
        assert isinstance(target, UnhydratedTarget)
        assert target.label is None

    def test_connection_failure_is_transport_error(self):
        async def scenario():
            async with aiohttp.ClientSession() as session:
                client = DiscordWebhookClient(session, api_base="http://127.0.0.1:9", timeout=5)
                await client.create_message(destination(), EMBED, token="u1")

        with pytest.raises(TransportError):
            asyncio.run(scenario())
