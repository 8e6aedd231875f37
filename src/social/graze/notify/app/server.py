import asyncio
import contextlib
import logging
from time import time
from typing import Any, Dict, List, Optional

import aiohttp
from aiohttp import web
import redis.asyncio as redis
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from social.graze.notify.app.config import (
    AccountRegistryAppKey,
    DiffEngineAppKey,
    EventHubAppKey,
    FeedClientAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    PkceCoordinatorAppKey,
    PollingOrchestratorAppKey,
    RedisClientAppKey,
    SecureStorageAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
    TickHealthTaskAppKey,
    TokenManagerAppKey,
)
from social.graze.notify.app.cors import cors_middleware_factory
from social.graze.notify.app.counts import DiffEngine
from social.graze.notify.app.events import (
    ACCOUNT_ADDED,
    ACCOUNT_REMOVED,
    COUNTS_UPDATED,
    NEW_ITEMS,
    REAUTHENTICATION_REQUIRED,
    EventHub,
)
from social.graze.notify.app.handlers.internal import (
    handle_internal_accounts,
    handle_internal_alive,
    handle_internal_counts,
    handle_internal_events,
    handle_internal_ready,
    handle_internal_recent,
    handle_internal_remove_account,
    handle_internal_status,
    handle_internal_viewed,
)
from social.graze.notify.app.handlers.oauth import (
    handle_atproto_callback,
    handle_atproto_client_metadata,
    handle_atproto_login,
    handle_internal_callback,
)
from social.graze.notify.app.metrics import MetricsClient, create_metrics_client
from social.graze.notify.app.tasks import PollingOrchestrator, tick_health_task
from social.graze.notify.atproto.feeds import FeedClient
from social.graze.notify.atproto.oauth import TokenManager
from social.graze.notify.atproto.pkce import PkceCoordinator
from social.graze.notify.model.feed import FeedKind
from social.graze.notify.model.health import HealthGauge
from social.graze.notify.model.poll import AggregateCounts
from social.graze.notify.store.accounts import AccountRegistry, RegistryEvent
from social.graze.notify.store.secure import RedisSecureStorage

logger = logging.getLogger(__name__)


def wire_components(
    app: web.Application,
    http_session: aiohttp.ClientSession,
    redis_client: redis.Redis,
    metrics_client: MetricsClient,
) -> None:
    """Construct the service components and register them on the application."""
    settings = app[SettingsAppKey]
    health_gauge = app[HealthGaugeAppKey]

    app[SessionAppKey] = http_session
    app[RedisClientAppKey] = redis_client
    app[MetricsClientAppKey] = metrics_client

    storage = RedisSecureStorage(
        redis_client, settings.encryption_key, prefix=settings.storage_prefix
    )
    app[SecureStorageAppKey] = storage

    registry = AccountRegistry(storage)
    app[AccountRegistryAppKey] = registry

    app[PkceCoordinatorAppKey] = PkceCoordinator(
        storage,
        pending_ttl=settings.pending_authorization_ttl,
        processed_ttl=settings.processed_state_ttl,
    )

    tokens = TokenManager(
        http_session,
        registry,
        metrics_client,
        client_id=settings.client_id,
        redirect_uri=settings.redirect_uri,
        scope=settings.scope,
        authorization_server=settings.authorization_server,
        plc_hostname=settings.plc_hostname,
        timeout=settings.http_timeout,
        refresh_ratio=settings.token_refresh_before_expiry_ratio,
        default_expiry=settings.default_access_token_expiry,
    )
    app[TokenManagerAppKey] = tokens

    feeds = FeedClient(
        tokens,
        page_size=settings.notification_page_size,
        chat_service_proxy=settings.chat_service_proxy,
    )
    app[FeedClientAppKey] = feeds

    hub = EventHub()
    app[EventHubAppKey] = hub

    async def publish_counts(counts: AggregateCounts) -> None:
        hub.publish(COUNTS_UPDATED, counts.as_dict())

    async def publish_items(
        account_id: str, kind: FeedKind, items: List[Dict[str, Any]]
    ) -> None:
        hub.publish(
            NEW_ITEMS, {"account_id": account_id, "feed": kind.value, "items": items}
        )

    engine = DiffEngine(
        counts_sink=publish_counts,
        items_sink=publish_items,
        capacity=settings.recent_items_capacity,
        metrics_client=metrics_client,
    )
    app[DiffEngineAppKey] = engine

    orchestrator = PollingOrchestrator(
        registry,
        feeds,
        engine,
        intervals={
            FeedKind.notifications: settings.notification_poll_interval,
            FeedKind.messages: settings.message_poll_interval,
        },
        metrics_client=metrics_client,
        health_gauge=health_gauge,
    )
    app[PollingOrchestratorAppKey] = orchestrator

    async def publish_account_events(event: RegistryEvent) -> None:
        if event.action == "saved" and event.created:
            hub.publish(ACCOUNT_ADDED, {"account_id": event.account_id})
        elif event.action == "removed":
            tokens.forget(event.account_id)
            hub.publish(
                ACCOUNT_REMOVED,
                {"account_id": event.account_id, "reason": event.reason},
            )
            if event.reason == "revoked":
                hub.publish(REAUTHENTICATION_REQUIRED, {"account_id": event.account_id})

    registry.add_listener(orchestrator.on_registry_event)
    registry.add_listener(publish_account_events)


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logger.debug("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logger.debug(
                "Ending request: %s %s %s",
                params.method,
                params.url,
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    http_session = aiohttp.ClientSession(trace_configs=[trace_config])
    redis_client = redis.Redis(
        connection_pool=redis.ConnectionPool.from_url(str(settings.redis_dsn))
    )

    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        debug=settings.debug,
    )
    await metrics_client.connect()

    wire_components(app, http_session, redis_client, metrics_client)

    # Resume polling for accounts authorized before this process started.
    await app[PollingOrchestratorAppKey].reconcile()

    logger.info("Startup complete")

    app[TickHealthTaskAppKey] = asyncio.create_task(
        tick_health_task(app[HealthGaugeAppKey])
    )

    yield

    logger.info("Shutting down background tasks")

    app[TickHealthTaskAppKey].cancel()
    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[TickHealthTaskAppKey]

    await app[PollingOrchestratorAppKey].close()
    app[EventHubAppKey].close()

    await app[SessionAppKey].close()
    await app[RedisClientAppKey].aclose()
    await app[MetricsClientAppKey].close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
        return response
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app.get(MetricsClientAppKey)
    if metrics_client is None:
        return await handler(request)

    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise
    except Exception as e:
        metrics_client.increment(
            "notify.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        await request.app[HealthGaugeAppKey].womp(source="server")
        raise e
    finally:
        metrics_client.timer(
            "notify.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "notify.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


def create_app(settings: Settings) -> web.Application:
    """Build the application with its routes and middleware, without components."""
    app = web.Application(
        middlewares=[
            cors_middleware_factory(settings.allowed_origin_list, settings.debug),
            statsd_middleware,
            sentry_middleware,
        ]
    )

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()

    app.add_routes(
        [
            web.get("/auth/atproto/login", handle_atproto_login),
            web.get("/auth/atproto/callback", handle_atproto_callback),
            web.get(
                "/auth/atproto/client-metadata.json", handle_atproto_client_metadata
            ),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
            web.post("/internal/api/callback", handle_internal_callback),
            web.get("/internal/api/status", handle_internal_status),
            web.get("/internal/api/accounts", handle_internal_accounts),
            web.delete(
                "/internal/api/accounts/{account_id}", handle_internal_remove_account
            ),
            web.get(
                "/internal/api/accounts/{account_id}/recent", handle_internal_recent
            ),
            web.post("/internal/api/viewed", handle_internal_viewed),
            web.get("/internal/api/counts", handle_internal_counts),
            web.get("/internal/api/events", handle_internal_events),
        ]
    )

    return app


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )

    app = create_app(settings)
    app.cleanup_ctx.append(background_tasks)

    return app
