"""
AT Protocol OAuth Token Lifecycle

This module implements the client side of the OAuth flows the service depends on:

- Authorization URL construction (`build_authorization_url`), using endpoints discovered
  from the authorization server metadata.
- Callback completion (`complete_authorization`): duplicate suppression, verifier
  consumption and the authorization code exchange.
- Token refresh (`TokenManager.refresh`), serialized per account, with revocation
  detection.
- Per-request DPoP proofs for resource servers (`TokenManager.sign_request`).

The client is a public client (`token_endpoint_auth_method=none`) using PKCE (RFC 7636)
and DPoP bound tokens. Every successful exchange or refresh produces a complete new
`Account` which replaces the stored one in a single write, so the access and refresh
tokens always rotate together.
"""

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import aiohttp
from aiohttp import ClientSession
from jwcrypto import jwk

from social.graze.notify.app.metrics import MetricsClient
from social.graze.notify.atproto.chain import (
    ChainMiddlewareClient,
    ChainResponse,
    DpopNonceCache,
    DpopProofMiddleware,
    MetricsMiddleware,
    is_nonce_challenge,
    url_origin,
)
from social.graze.notify.atproto.errors import (
    DuplicateCallbackError,
    InvalidCallbackError,
    MalformedTokenResponseError,
    NotifyError,
    ProtocolError,
    RejectedGrantError,
    RevokedError,
    TransientError,
    UnknownStateError,
)
from social.graze.notify.atproto.jwt import create_dpop_jwt, generate_dpop_key
from social.graze.notify.atproto.pds import oauth_authorization_server
from social.graze.notify.atproto.pkce import PkceCoordinator
from social.graze.notify.model.account import Account
from social.graze.notify.resolve.did import ResolvedSubject, resolve_did
from social.graze.notify.store.accounts import AccountRegistry

logger = logging.getLogger(__name__)


def build_authorization_url(
    authorization_endpoint: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    state: str,
    code_challenge: str,
) -> str:
    """Add the authorization code request parameters to the authorization endpoint."""
    parsed_authorization_endpoint = urlparse(authorization_endpoint)
    query = dict(parse_qsl(parsed_authorization_endpoint.query))
    query.update(
        {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": scope,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
    )
    parsed_authorization_endpoint = parsed_authorization_endpoint._replace(
        query=urlencode(query)
    )
    return urlunparse(parsed_authorization_endpoint)


def classify_token_error(response: ChainResponse) -> NotifyError:
    """Map a non-2xx token endpoint response to an error."""
    if response.status >= 500 or response.status == 429:
        return TransientError(f"token endpoint returned {response.status}")

    error_code = response.error_code()
    if error_code is not None:
        body = response.json_body() or {}
        description = body.get("error_description")
        return RejectedGrantError(
            error_code, description if isinstance(description, str) else None
        )

    return ProtocolError(f"token endpoint returned {response.status} without an error body")


class TokenManager:
    """
    Exchanges authorization codes, refreshes tokens and signs resource requests.

    Refreshes for one account are serialized on a per-account lock. A caller that waited
    on the lock while another caller rotated the tokens receives the stored account
    instead of spending the already used refresh token a second time.
    """

    def __init__(
        self,
        http_session: ClientSession,
        registry: AccountRegistry,
        metrics_client: MetricsClient,
        client_id: str,
        redirect_uri: str,
        scope: str,
        authorization_server: str,
        plc_hostname: str,
        timeout: float = 10.0,
        refresh_ratio: float = 0.8,
        default_expiry: int = 1800,
        nonce_cache: Optional[DpopNonceCache] = None,
    ) -> None:
        self.http_session = http_session
        self.registry = registry
        self.metrics_client = metrics_client
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.scope = scope
        self.authorization_server = authorization_server
        self.plc_hostname = plc_hostname
        self.timeout = timeout
        self.refresh_ratio = refresh_ratio
        self.default_expiry = default_expiry
        self.nonce_cache = nonce_cache or DpopNonceCache()

        self._metadata: Optional[Dict[str, Any]] = None
        self._metadata_lock = asyncio.Lock()
        self._refresh_locks: Dict[str, asyncio.Lock] = {}

    async def authorization_server_metadata(self) -> Dict[str, Any]:
        async with self._metadata_lock:
            if self._metadata is not None:
                return self._metadata

            try:
                metadata = await oauth_authorization_server(
                    self.http_session, self.authorization_server, timeout=self.timeout
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise TransientError(
                    f"unable to fetch metadata for {self.authorization_server}"
                ) from e

            if metadata is None:
                raise ProtocolError(
                    f"no authorization server metadata at {self.authorization_server}"
                )
            for key in ("authorization_endpoint", "token_endpoint"):
                if not isinstance(metadata.get(key), str):
                    raise ProtocolError(f"authorization server metadata lacks {key}")

            self._metadata = metadata
            return metadata

    async def authorization_url(self, state: str, code_challenge: str) -> str:
        metadata = await self.authorization_server_metadata()
        return build_authorization_url(
            metadata["authorization_endpoint"],
            client_id=self.client_id,
            redirect_uri=self.redirect_uri,
            scope=self.scope,
            state=state,
            code_challenge=code_challenge,
        )

    def _chain_client(
        self, dpop_key: jwk.JWK, name: str, access_token: Optional[str] = None
    ) -> ChainMiddlewareClient:
        def proof(method: str, url: str, nonce: Optional[str]) -> str:
            return create_dpop_jwt(
                dpop_key, method, url, nonce=nonce, access_token=access_token
            )

        return ChainMiddlewareClient(
            client_session=self.http_session,
            middleware=[
                MetricsMiddleware(self.metrics_client, name),
                DpopProofMiddleware(proof, self.nonce_cache),
            ],
            timeout=self.timeout,
        )

    def resource_client(self, account: Account, name: str) -> ChainMiddlewareClient:
        """A chain client whose requests carry DPoP proofs bound to the access token."""
        return self._chain_client(
            account.dpop_key(), name, access_token=account.access_token
        )

    def sign_request(
        self, account: Account, method: str, url: str, nonce: Optional[str] = None
    ) -> str:
        """Build a DPoP proof for one resource request made with `account`."""
        if nonce is None:
            nonce = self.nonce_cache.get(url_origin(url))
        return create_dpop_jwt(
            account.dpop_key(),
            method,
            url,
            nonce=nonce,
            access_token=account.access_token,
        )

    async def _token_request(
        self, dpop_key: jwk.JWK, data: Dict[str, str], name: str
    ) -> ChainResponse:
        metadata = await self.authorization_server_metadata()
        chain_client = self._chain_client(dpop_key, name)
        return await chain_client.post(metadata["token_endpoint"], data=data)

    def _expires_at(self, now: datetime, token_response: Dict[str, Any]) -> datetime:
        expires_in = token_response.get("expires_in", self.default_expiry)
        if not isinstance(expires_in, (int, float)) or expires_in <= 0:
            expires_in = self.default_expiry
        return now + timedelta(seconds=expires_in)

    async def _resolve(self, did: str) -> ResolvedSubject:
        try:
            resolved = await resolve_did(
                self.http_session, self.plc_hostname, did, timeout=self.timeout
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientError(f"unable to resolve {did}") from e
        if resolved is None:
            raise ProtocolError(f"unable to resolve {did}")
        return resolved

    async def exchange_code(
        self, code: str, verifier: str, redirect_uri: Optional[str] = None
    ) -> Account:
        """
        Perform the authorization code grant and build the resulting Account.

        A new DPoP key is generated for the account. The token response must contain the
        access token, the refresh token and the subject DID; the subject is resolved to
        the handle and PDS before the Account is built.

        Raises:
            RejectedGrantError: The server answered with a structured OAuth error
            ProtocolError: The server answered with something that is not understood
            MalformedTokenResponseError: A successful response lacks a required field
            TransientError: Network failure, timeout or 5xx
        """
        metadata = await self.authorization_server_metadata()
        dpop_key, _ = generate_dpop_key()

        data = {
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": verifier,
            "redirect_uri": redirect_uri or self.redirect_uri,
            "client_id": self.client_id,
        }

        response = await self._token_request(dpop_key, data, "token_exchange")
        if not response.ok:
            error = classify_token_error(response)
            self.metrics_client.increment(
                "notify.token.exchange", 1, tag_dict={"outcome": type(error).__name__}
            )
            raise error

        token_response = response.json_body()
        if token_response is None:
            raise ProtocolError("token response is not a JSON object")

        missing = [
            key
            for key in ("access_token", "refresh_token", "sub")
            if not token_response.get(key)
        ]
        if missing:
            self.metrics_client.increment(
                "notify.token.exchange", 1, tag_dict={"outcome": "malformed"}
            )
            raise MalformedTokenResponseError(f"missing {', '.join(missing)}")

        subject = await self._resolve(token_response["sub"])

        now = datetime.now(timezone.utc)
        account = Account(
            id=subject.did,
            display_name=subject.handle,
            access_token=token_response["access_token"],
            refresh_token=token_response["refresh_token"],
            dpop_jwk=dpop_key.export(private_key=True, as_dict=True),
            api_base_url=subject.pds,
            issuer=str(metadata.get("issuer", self.authorization_server)),
            token_issued_at=now,
            access_token_expires_at=self._expires_at(now, token_response),
        )

        self.metrics_client.increment(
            "notify.token.exchange", 1, tag_dict={"outcome": "success"}
        )
        logger.info("Exchanged authorization code for %s", account.id)
        return account

    async def refresh(self, account: Account) -> Account:
        """
        Perform the refresh token grant for an account and persist the new tokens.

        Raises:
            RevokedError: The refresh token was rejected (400/401). The account has been
                removed from the registry.
            TransientError: Network failure, timeout or 5xx. The account is untouched.
            MalformedTokenResponseError: The response lacks a token. The account is
                untouched.
        """
        lock = self._refresh_locks.setdefault(account.id, asyncio.Lock())
        async with lock:
            current = await self.registry.get(account.id)
            if current is None:
                raise RevokedError(account.id, "account is no longer registered")

            if current.refresh_token != account.refresh_token:
                logger.debug("Tokens for %s were already rotated", account.id)
                return current

            try:
                refreshed = await self._refresh_locked(current)
            except NotifyError as e:
                self.metrics_client.increment(
                    "notify.token.refresh", 1, tag_dict={"outcome": type(e).__name__}
                )
                raise

            self.metrics_client.increment(
                "notify.token.refresh", 1, tag_dict={"outcome": "success"}
            )
            return refreshed

    async def _refresh_locked(self, account: Account) -> Account:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": account.refresh_token,
            "client_id": self.client_id,
        }

        response = await self._token_request(account.dpop_key(), data, "token_refresh")

        if is_nonce_challenge(response):
            raise TransientError(f"nonce challenge persisted refreshing {account.id}")

        if response.status in (400, 401):
            logger.warning(
                "Refresh token for %s rejected (%s), removing account",
                account.id,
                response.error_code() or response.status,
            )
            await self.registry.remove(account.id, reason="revoked")
            self.forget(account.id)
            raise RevokedError(account.id, response.error_code() or "")

        if not response.ok:
            if response.status >= 500 or response.status == 429:
                raise TransientError(f"refresh returned {response.status}")
            raise ProtocolError(f"refresh returned {response.status}")

        token_response = response.json_body()
        if token_response is None:
            raise ProtocolError("refresh response is not a JSON object")

        access_token = token_response.get("access_token")
        refresh_token = token_response.get("refresh_token")
        if not access_token or not refresh_token:
            raise MalformedTokenResponseError("refresh response lacks a token")

        now = datetime.now(timezone.utc)
        refreshed = account.with_tokens(
            access_token=access_token,
            refresh_token=refresh_token,
            issued_at=now,
            expires_at=self._expires_at(now, token_response),
        )

        if not await self.registry.update(refreshed):
            raise RevokedError(account.id, "account was removed during refresh")

        logger.debug("Refreshed tokens for %s", account.id)
        return refreshed

    async def ensure_fresh(self, account: Account, force: bool = False) -> Account:
        """Refresh when forced or once the configured share of the lifetime has passed."""
        if force or account.needs_refresh(datetime.now(timezone.utc), self.refresh_ratio):
            return await self.refresh(account)
        return account

    def forget(self, account_id: str) -> None:
        self._refresh_locks.pop(account_id, None)


async def complete_authorization(
    params: Mapping[str, str],
    pkce: PkceCoordinator,
    tokens: TokenManager,
    registry: AccountRegistry,
    redirect_uri: Optional[str] = None,
) -> Account:
    """
    Handle one callback delivery: `{code, state}` or `{error, error_description}`.

    The processed flag for the state is claimed before anything else touches the network,
    so concurrent or repeated deliveries of the same callback produce exactly one token
    exchange; the others raise `DuplicateCallbackError`.
    """
    state = params.get("state")

    error = params.get("error")
    if error:
        if state:
            await pkce.discard_authorization(state)
        raise RejectedGrantError(error, params.get("error_description"))

    code = params.get("code")
    if not code or not state:
        raise InvalidCallbackError("callback is missing code or state")

    if not await pkce.mark_processed(state):
        raise DuplicateCallbackError(f"state {state[:8]}... already processed")

    verifier = await pkce.consume_authorization(state)
    if verifier is None:
        raise UnknownStateError(f"no pending authorization for state {state[:8]}...")

    account = await tokens.exchange_code(code, verifier, redirect_uri)

    if not await registry.save(account):
        raise MalformedTokenResponseError("exchanged account is incomplete")

    return account
