"""
HTTP front door.

A minimal aiohttp application: health endpoints, the per-webhook push
endpoint statuspage.io posts to, and an authenticated listing endpoint.
Push payloads are acknowledged immediately and relayed in the background.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Set, Union

from aiohttp import web

from statusrelay import __version__
from statusrelay.manager import StatusManager
from statusrelay.models import AffectedComponent, Incident
from statusrelay.parser import MalformedPayload

log = logging.getLogger(__name__)

MANAGER_KEY = web.AppKey("manager", StatusManager)
PUSH_TASKS_KEY = web.AppKey("push_tasks", set)

STATUSPAGE_AGENT = "statuspage.io/webhooks/"


def _error(code: int, message: str) -> web.Response:
    return web.json_response({"success": False, "error": message, "code": code}, status=code)


async def index(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    return web.json_response({
        "status": "running",
        "version": __version__,
        "pages": len(manager.pages),
        "hooks": len(manager.hooks),
    })


async def health(request: web.Request) -> web.Response:
    return web.json_response({"status": "healthy"})


async def list_hooks(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    token = manager.settings.auth_token
    if not token or request.headers.get("Authorization") != token:
        return _error(403, "Forbidden")
    return web.json_response(manager.snapshot(
        include_pages=request.query.get("includePages") == "true",
        include_hooks=request.query.get("includeHooks") == "true",
    ))


async def execute(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    hook = f"{request.match_info['id']}/{request.match_info['token']}"

    if request.method == "GET":
        if hook in manager.hooks:
            return web.Response(status=202)
        return _error(404, "Not Found")

    if STATUSPAGE_AGENT not in request.headers.get("User-Agent", ""):
        return _error(401, "Unauthorized")
    if hook not in manager.hooks:
        return _error(400, "Invalid ID or Token")
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        payload = None
    try:
        event = manager.parse_push(payload)
    except MalformedPayload as exc:
        log.warning(
            "Got request to %s (%s) with missing or invalid body: %s",
            manager.hooks[hook].name, manager.hooks[hook].page, exc,
        )
        return _error(400, "Missing or invalid body")

    task = asyncio.create_task(_relay(manager, hook, event))
    tasks: Set[asyncio.Task] = request.app[PUSH_TASKS_KEY]
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return web.Response(status=204)


async def _relay(manager: StatusManager, hook: str, event: Union[Incident, AffectedComponent]) -> None:
    try:
        decision = await manager.relay_push(hook, event)
    except Exception:
        log.exception("Failed to relay push payload for webhook %s", hook.split("/")[0])
        return
    log.debug("Push payload relayed with decision %s", decision.value)


async def _drain_push_tasks(app: web.Application) -> None:
    tasks = app[PUSH_TASKS_KEY]
    for task in list(tasks):
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def create_app(manager: StatusManager) -> web.Application:
    app = web.Application()
    app[MANAGER_KEY] = manager
    app[PUSH_TASKS_KEY] = set()
    app.router.add_get("/", index)
    app.router.add_get("/health", health)
    app.router.add_get("/api/list", list_hooks)
    app.router.add_route("GET", "/{id}/{token}", execute)
    app.router.add_route("POST", "/{id}/{token}", execute)
    app.on_cleanup.append(_drain_push_tasks)
    return app
