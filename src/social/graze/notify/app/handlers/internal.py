"""
Internal API consumed by the presentation layer.

- GET /internal/api/status - whether any account is signed in
- GET /internal/api/accounts - accounts with their unread counts
- DELETE /internal/api/accounts/{account_id} - sign an account out
- GET /internal/api/accounts/{account_id}/recent - recently seen notifications
- POST /internal/api/viewed - the user viewed a feed, reset its count
- GET /internal/api/counts - current aggregate counts
- GET /internal/api/events - server-sent events stream of UI events
- GET /internal/alive, /internal/ready - probes
"""

import asyncio
import json
import logging
from typing import Any

from aiohttp import web

from social.graze.notify.app.config import (
    AccountRegistryAppKey,
    DiffEngineAppKey,
    EventHubAppKey,
    HealthGaugeAppKey,
    PollingOrchestratorAppKey,
    SettingsAppKey,
)
from social.graze.notify.app.cors import get_cors_headers
from social.graze.notify.model.feed import FeedKind
from social.graze.notify.model.poll import AccountCounts

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 15.0


async def handle_internal_status(request: web.Request):
    registry = request.app[AccountRegistryAppKey]
    accounts = await registry.load_all()
    return web.json_response(
        {"authenticated": len(accounts) > 0, "account_count": len(accounts)}
    )


async def handle_internal_accounts(request: web.Request):
    registry = request.app[AccountRegistryAppKey]
    engine = request.app[DiffEngineAppKey]
    orchestrator = request.app[PollingOrchestratorAppKey]

    accounts = await registry.load_all()
    counts = await engine.snapshot()

    results = []
    for account in sorted(accounts.values(), key=lambda a: a.display_name):
        account_counts = counts.per_account.get(account.id, AccountCounts())
        feeds = {
            task.feed_kind.value: task.state.value
            for task in orchestrator.tasks()
            if task.account_id == account.id
        }
        results.append(
            {
                **account.public_view(),
                "counts": account_counts.as_dict(),
                "feeds": feeds,
            }
        )
    return web.json_response({"accounts": results})


async def handle_internal_remove_account(request: web.Request):
    registry = request.app[AccountRegistryAppKey]
    account_id = request.match_info["account_id"]

    removed = await registry.remove(account_id, reason="user")
    if not removed:
        return web.json_response(
            {"success": False, "error": "Account not found"}, status=404
        )
    return web.json_response({"success": True})


async def handle_internal_recent(request: web.Request):
    engine = request.app[DiffEngineAppKey]
    account_id = request.match_info["account_id"]
    return web.json_response(
        {"items": [item.model_dump() for item in engine.recent(account_id)]}
    )


async def handle_internal_viewed(request: web.Request):
    orchestrator = request.app[PollingOrchestratorAppKey]

    try:
        body: Any = await request.json()
    except ValueError:
        body = None

    if not isinstance(body, dict) or not isinstance(body.get("account_id"), str):
        return web.json_response(
            {"success": False, "error": "account_id and feed are required"}, status=400
        )

    try:
        kind = FeedKind(body.get("feed", FeedKind.notifications.value))
    except ValueError:
        return web.json_response(
            {"success": False, "error": "feed must be notifications or messages"},
            status=400,
        )

    await orchestrator.mark_viewed(body["account_id"], kind)
    return web.json_response({"success": True})


async def handle_internal_counts(request: web.Request):
    engine = request.app[DiffEngineAppKey]
    counts = await engine.snapshot()
    return web.json_response(counts.as_dict())


async def handle_internal_events(request: web.Request):
    """Stream UI events. The first event is always the current counts."""
    settings = request.app[SettingsAppKey]
    hub = request.app[EventHubAppKey]
    engine = request.app[DiffEngineAppKey]

    response = web.StreamResponse(
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            **get_cors_headers(
                request.headers.get("Origin"),
                request.path,
                settings.allowed_origin_list,
                settings.debug,
            ),
        }
    )
    await response.prepare(request)

    queue = hub.subscribe()
    try:
        counts = await engine.snapshot()
        await response.write(
            f"event: counts_updated\ndata: {json.dumps(counts.as_dict())}\n\n".encode()
        )

        while True:
            try:
                event = await asyncio.wait_for(
                    queue.get(), timeout=SSE_KEEPALIVE_SECONDS
                )
            except asyncio.TimeoutError:
                await response.write(b": keepalive\n\n")
                continue

            if event is None:
                break

            await response.write(
                f"event: {event.name}\ndata: {json.dumps(event.data)}\n\n".encode()
            )
    except ConnectionResetError:
        logger.debug("Event stream client went away")
    finally:
        hub.unsubscribe(queue)

    return response


async def handle_internal_ready(request: web.Request):
    health_gauge = request.app[HealthGaugeAppKey]
    if await health_gauge.is_healthy():
        return web.Response(status=200)
    return web.json_response(await health_gauge.report(), status=503)


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)
