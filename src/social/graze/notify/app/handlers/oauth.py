"""
AT Protocol OAuth Handlers

Endpoints that drive the sign-in flow:

- GET /auth/atproto/login - start an attempt and redirect to the authorization server
- GET /auth/atproto/callback - authorization server redirect carrying code and state
- POST /internal/api/callback - the same callback relayed by the UI as JSON
- GET /auth/atproto/client-metadata.json - OAuth client metadata

Both callback routes share `complete_callback`, so a callback delivered through both
paths still results in a single token exchange.
"""

import logging
from typing import Any, Dict, List, Mapping

from aiohttp import web
from pydantic import BaseModel

from social.graze.notify.app.config import (
    AccountRegistryAppKey,
    PkceCoordinatorAppKey,
    SettingsAppKey,
    TokenManagerAppKey,
)
from social.graze.notify.app.handlers.helpers import error_response
from social.graze.notify.atproto.errors import DuplicateCallbackError, NotifyError
from social.graze.notify.atproto.oauth import complete_authorization

logger = logging.getLogger(__name__)


class ATProtocolOAuthClientMetadata(BaseModel):
    """
    OAuth 2.0 client metadata (RFC 7591) published at the client id URL.

    The client is public: it authenticates with PKCE and DPoP bound tokens rather than a
    client secret, so `token_endpoint_auth_method` is "none".
    """

    client_id: str
    """Client identifier URI"""

    client_name: str
    """Human-readable name of the client application"""

    client_uri: str
    """URI of the client's homepage"""

    redirect_uris: List[str]
    """List of allowed redirect URIs for this client"""

    scope: str
    """OAuth scopes requested by this client"""

    grant_types: List[str]
    response_types: List[str]

    token_endpoint_auth_method: str
    """Authentication method for the token endpoint"""

    application_type: str
    """Type of application (web, native)"""

    dpop_bound_access_tokens: bool
    """Whether access tokens are bound to DPoP proofs"""


async def handle_atproto_login(request: web.Request):
    """Begin an authorization attempt and redirect to the authorization server."""
    pkce = request.app[PkceCoordinatorAppKey]
    tokens = request.app[TokenManagerAppKey]

    state, challenge = await pkce.begin_authorization()
    try:
        authorization_url = await tokens.authorization_url(state, challenge)
    except NotifyError as e:
        logger.warning("Unable to build authorization URL: %s", e)
        await pkce.discard_authorization(state)
        return error_response(e, status=502)

    raise web.HTTPFound(authorization_url)


async def complete_callback(request: web.Request, params: Mapping[str, str]):
    settings = request.app[SettingsAppKey]
    try:
        account = await complete_authorization(
            params,
            request.app[PkceCoordinatorAppKey],
            request.app[TokenManagerAppKey],
            request.app[AccountRegistryAppKey],
            redirect_uri=settings.redirect_uri,
        )
    except DuplicateCallbackError:
        logger.info("Ignoring duplicate callback")
        return web.json_response({"success": True, "already_processed": True})
    except NotifyError as e:
        logger.warning("Authorization failed: %s", e)
        return error_response(e)

    return web.json_response({"success": True, "account": account.public_view()})


async def handle_atproto_callback(request: web.Request):
    """
    Handle the authorization server redirect.

    Request Parameters:
        code, state: On success
        error, error_description: When the user or server refused the grant
    """
    params: Dict[str, str] = {key: value for key, value in request.query.items()}
    return await complete_callback(request, params)


async def handle_internal_callback(request: web.Request):
    """The callback relayed by the UI as a JSON object."""
    try:
        body: Any = await request.json()
    except ValueError:
        body = None

    if not isinstance(body, dict):
        body = {}

    params = {key: value for key, value in body.items() if isinstance(value, str)}
    return await complete_callback(request, params)


async def handle_atproto_client_metadata(request: web.Request):
    settings = request.app[SettingsAppKey]
    client_metadata = ATProtocolOAuthClientMetadata(
        client_id=settings.client_id,
        client_name=settings.client_name,
        client_uri=settings.client_uri,
        redirect_uris=[settings.redirect_uri],
        scope=settings.scope,
        grant_types=["authorization_code", "refresh_token"],
        response_types=["code"],
        token_endpoint_auth_method="none",
        application_type="web",
        dpop_bound_access_tokens=True,
    )
    return web.json_response(client_metadata.model_dump())
