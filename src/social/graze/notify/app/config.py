"""
Configuration Module for the Notify Service

This module defines the configuration system for the notify service, using Pydantic for
settings validation and dependency injection through AppKeys.

The Settings class is loaded from environment variables with defaults suitable for
development. Components access settings and shared resources through typed AppKeys on
the aiohttp application rather than module level state.

Key configuration areas include:
- Service identification and networking
- OAuth client identity and authorization server
- Cache connection and encryption of stored values
- Polling intervals and limits
- Monitoring and observability
"""

import asyncio
import base64
from typing import Final, List, Optional
import logging

from aiohttp import ClientSession, web
from cryptography.fernet import Fernet
from pydantic import AliasChoices, Field, RedisDsn, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from redis import asyncio as redis

from social.graze.notify.app.counts import DiffEngine
from social.graze.notify.app.events import EventHub
from social.graze.notify.app.metrics import MetricsClient
from social.graze.notify.app.tasks import PollingOrchestrator
from social.graze.notify.atproto.feeds import FeedClient
from social.graze.notify.atproto.oauth import TokenManager
from social.graze.notify.atproto.pkce import PkceCoordinator
from social.graze.notify.model.health import HealthGauge
from social.graze.notify.store.accounts import AccountRegistry
from social.graze.notify.store.secure import SecureStorage


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for the notify service.

    Environment variables are mapped to fields automatically, with aliases where a
    platform convention exists (PORT, REDIS_URL, TELEGRAF_HOST).
    """

    model_config = SettingsConfigDict(arbitrary_types_allowed=True)

    # Environment and debugging settings
    debug: bool = False
    """
    Enable debug mode for verbose logging.
    Set with DEBUG=true environment variable.
    """

    allowed_origins: str = "http://localhost:5200"
    """
    Comma-separated list of origins allowed to call the internal API.
    Set with ALLOWED_ORIGINS environment variable.
    """

    http_port: int = Field(alias="port", default=5200)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    # OAuth client identity
    client_id: str = "http://localhost:5200/auth/atproto/client-metadata.json"
    """
    Client identifier, the URL of the published client metadata document.
    Set with CLIENT_ID environment variable.
    """

    redirect_uri: str = "http://127.0.0.1:5200/auth/atproto/callback"
    """
    Redirect URI registered in the client metadata and sent with every grant.
    Set with REDIRECT_URI environment variable.
    """

    client_name: str = "Notisky"
    """Human readable client name shown on the authorization screen."""

    client_uri: str = "https://notisky.symm.app"
    """Homepage of the client, published in the client metadata."""

    scope: str = "atproto transition:generic transition:chat.bsky"
    """
    OAuth scope requested at authorization.
    Set with SCOPE environment variable.
    """

    authorization_server: str = "https://bsky.social"
    """
    Authorization server used for sign-in. Its endpoints are discovered from
    /.well-known/oauth-authorization-server.
    Set with AUTHORIZATION_SERVER environment variable.
    """

    plc_hostname: str = "plc.directory"
    """
    Hostname for the PLC directory service for DID resolution.
    Set with PLC_HOSTNAME environment variable.
    """

    # Storage
    redis_dsn: RedisDsn = Field(
        "redis://localhost:6379/1?decode_responses=True",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """
    Redis connection string for account and authorization storage.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    storage_prefix: str = "notify"
    """Prefix for every key written to Redis."""

    encryption_key: Fernet = Fernet(Fernet.generate_key())
    """
    Fernet symmetric encryption key for every stored value.
    Can be set to a Fernet object or base64-encoded key string.
    Set with ENCRYPTION_KEY environment variable.
    """

    pending_authorization_ttl: int = 86400
    """
    Upper bound in seconds on how long an abandoned authorization attempt is kept.
    Normal cleanup happens when the callback consumes it.
    """

    processed_state_ttl: int = 86400
    """Seconds a processed-state flag is kept to reject duplicate callbacks."""

    # Polling
    notification_poll_interval: float = 1.0
    """
    Seconds between notification fetches for each account.
    Set with NOTIFICATION_POLL_INTERVAL environment variable.
    """

    message_poll_interval: float = 60.0
    """
    Seconds between conversation fetches for each account.
    Set with MESSAGE_POLL_INTERVAL environment variable.
    """

    notification_page_size: int = 50
    """Number of notifications requested per fetch."""

    recent_items_capacity: int = 50
    """Number of recent items kept per account for display."""

    chat_service_proxy: str = "did:web:api.bsky.chat#bsky_chat"
    """Value of the atproto-proxy header for conversation listing."""

    http_timeout: float = 10.0
    """
    Timeout in seconds applied to every outbound request.
    Set with HTTP_TIMEOUT environment variable.
    """

    # Token lifecycle
    token_refresh_before_expiry_ratio: float = 0.8
    """
    Ratio of token lifetime to wait before refreshing.
    For example, 0.8 means tokens are refreshed after 80% of their lifetime.
    Set with TOKEN_REFRESH_BEFORE_EXPIRY_RATIO environment variable.
    """

    default_access_token_expiry: int = 1800
    """Access token lifetime in seconds assumed when a token response omits expires_in."""

    # Monitoring and observability settings
    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    metrics_backend: str = "none"
    """
    Metrics backend, either "telegraf" or "none".
    Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    @property
    def allowed_origin_list(self) -> List[str]:
        return [
            origin.strip()
            for origin in self.allowed_origins.split(",")
            if origin.strip()
        ]

    @field_validator("encryption_key", mode="before")
    @classmethod
    def decode_encryption_key(cls, v) -> Fernet:
        """
        Accept a Fernet object, a Fernet key string, or a base64-encoded Fernet key string.

        Raises:
            ValueError: If the input is neither a Fernet object nor a valid base64 key
        """
        if isinstance(v, Fernet):  # Already a Fernet instance, return it
            return v
        elif isinstance(v, str):
            try:
                return Fernet(v)
            except ValueError:
                # Base64 wrapped Fernet key
                return Fernet(base64.b64decode(v))
        raise ValueError(
            "encryption_key must be a Fernet object or a base64-encoded key string"
        )


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client"""

SecureStorageAppKey: Final = web.AppKey("secure_storage", SecureStorage)
"""AppKey for the encrypted key/value storage"""

AccountRegistryAppKey: Final = web.AppKey("account_registry", AccountRegistry)
"""AppKey for the account registry"""

PkceCoordinatorAppKey: Final = web.AppKey("pkce_coordinator", PkceCoordinator)
"""AppKey for the PKCE flow coordinator"""

TokenManagerAppKey: Final = web.AppKey("token_manager", TokenManager)
"""AppKey for the token lifecycle manager"""

FeedClientAppKey: Final = web.AppKey("feed_client", FeedClient)

DiffEngineAppKey: Final = web.AppKey("diff_engine", DiffEngine)
"""AppKey for the diff and aggregation engine"""

EventHubAppKey: Final = web.AppKey("event_hub", EventHub)
"""AppKey for the UI event fan-out"""

PollingOrchestratorAppKey: Final = web.AppKey(
    "polling_orchestrator", PollingOrchestrator
)
"""AppKey for the polling orchestrator"""

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
"""AppKey for accessing the health monitoring gauge"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client"""

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])
"""AppKey for the background task that drains the health gauge"""
