"""
Outbound HTTP request chain.

Requests flow through a list of `RequestMiddlewareBase` instances before reaching the
shared `aiohttp.ClientSession`. A middleware may return a replacement request alongside
the response, which asks the chain to try again; `ChainMiddlewareContext` allows at most
`attempt_max` attempts and hands back the final response as is.

`DpopProofMiddleware` uses that hook to answer a DPoP nonce challenge: the proof is
regenerated with the server-issued nonce and the request is retried exactly once.
"""

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass
import json
import logging
from time import time
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generator,
    Optional,
    Sequence,
    Tuple,
)
from urllib.parse import urlparse

import aiohttp
from aiohttp import ClientResponse, ClientSession, ClientTimeout, hdrs
from multidict import CIMultiDictProxy

from social.graze.notify.app.metrics import MetricsClient
from social.graze.notify.atproto.errors import TransientError

RequestFunc = Callable[..., Awaitable[ClientResponse]]

logger = logging.getLogger(__name__)


@dataclass
class ChainRequest:
    method: str
    url: str
    headers: Optional[Dict[str, str]] = None
    kwargs: Optional[Dict[str, Any]] = None

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        return ChainRequest(
            method=request.method,
            url=request.url,
            headers=dict(request.headers or {}),
            kwargs=dict(request.kwargs or {}),
        )

    @property
    def origin(self) -> str:
        return url_origin(self.url)


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | list[Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            text = await response.text()
            try:
                return ChainResponse(status=status, headers=headers, body=json.loads(text))
            except ValueError:
                return ChainResponse(status=status, headers=headers, body=text)
        elif content_type.startswith("text/"):
            return ChainResponse(
                status=status, headers=headers, body=await response.text()
            )
        else:
            return ChainResponse(
                status=status, headers=headers, body=await response.read()
            )

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json_body(self) -> Optional[Dict[str, Any]]:
        """The body when it decoded to a JSON object, otherwise None."""
        if isinstance(self.body, dict):
            return self.body
        return None

    def body_matches_kv(self, key: str, value: Any) -> bool:
        body = self.json_body()
        return body is not None and body.get(key) == value

    def error_code(self) -> Optional[str]:
        body = self.json_body()
        if body is None:
            return None
        error = body.get("error")
        return error if isinstance(error, str) else None


NextChainResponseCallbackType = Tuple[ChainResponse, Optional[ChainRequest]]

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


def url_origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class DpopNonceCache:
    """Most recent `DPoP-Nonce` seen per server origin."""

    def __init__(self) -> None:
        self._nonces: Dict[str, str] = {}

    def get(self, origin: str) -> Optional[str]:
        return self._nonces.get(origin)

    def set(self, origin: str, nonce: str) -> None:
        self._nonces[origin] = nonce


DpopProofFactory = Callable[[str, str, Optional[str]], str]
"""Builds a proof for (method, url, nonce)."""


def is_nonce_challenge(response: ChainResponse) -> bool:
    if response.status not in (400, 401):
        return False
    if response.error_code() == "use_dpop_nonce":
        return True
    www_authenticate = response.headers.get(hdrs.WWW_AUTHENTICATE, "")
    return "use_dpop_nonce" in www_authenticate


class DpopProofMiddleware(RequestMiddlewareBase):
    def __init__(
        self, proof_factory: DpopProofFactory, nonce_cache: DpopNonceCache
    ) -> None:
        super().__init__()
        self._proof_factory = proof_factory
        self._nonce_cache = nonce_cache

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        origin = request.origin
        used_nonce = self._nonce_cache.get(origin)

        if request.headers is None:
            request.headers = {}
        request.headers["DPoP"] = self._proof_factory(
            request.method, request.url, used_nonce
        )

        chain_response, new_request = await next(request)

        server_nonce = chain_response.headers.get("DPoP-Nonce")
        if server_nonce:
            self._nonce_cache.set(origin, server_nonce)

        if (
            new_request is None
            and is_nonce_challenge(chain_response)
            and server_nonce
            and server_nonce != used_nonce
        ):
            logger.debug("DPoP nonce challenge from %s, retrying", origin)
            new_request = ChainRequest.from_chain_request(request)

        return chain_response, new_request


class MetricsMiddleware(RequestMiddlewareBase):
    def __init__(self, metrics_client: MetricsClient, name: str) -> None:
        super().__init__()
        self._metrics_client = metrics_client
        self._name = name

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        start_time = time()
        status = "error"
        try:
            chain_response, new_request = await next(request)
            status = str(chain_response.status)
            return chain_response, new_request
        finally:
            tags = {"name": self._name, "method": request.method, "status": status}
            self._metrics_client.timer(
                "notify.http.request.time", time() - start_time, tag_dict=tags
            )
            self._metrics_client.increment(
                "notify.http.request.count", 1, tag_dict=tags
            )


class EndOfLineChainMiddleware:
    """Performs the request and reads the whole body.

    Connection failures and timeouts become `TransientError`.
    """

    def __init__(self, request_func: RequestFunc, timeout: ClientTimeout) -> None:
        self._request_func = request_func
        self._timeout = timeout

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:
        logger.debug(f"Making request: {request.method} {request.url}")

        kwargs = dict(request.kwargs or {})
        kwargs.setdefault("timeout", self._timeout)

        try:
            response: ClientResponse = await self._request_func(
                request.method.lower(),
                request.url,
                headers=request.headers,
                **kwargs,
            )
            try:
                chain_response = await ChainResponse.from_aiohttp_response(response)
            finally:
                response.release()
        except asyncio.TimeoutError as e:
            raise TransientError(f"{request.method} {request.url} timed out") from e
        except aiohttp.ClientError as e:
            raise TransientError(f"{request.method} {request.url} failed: {e}") from e

        return chain_response, None


class ChainMiddlewareContext:
    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        attempt_max: int = 2,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._attempt_max = attempt_max

    async def _do_request(self) -> ChainResponse:
        chain_request = self._chain_request
        current_attempt = 0

        while True:
            current_attempt += 1

            chain_response, new_request = await self._chain_callback(chain_request)

            if new_request is None or current_attempt >= self._attempt_max:
                return chain_response

            logger.debug(
                f"Retrying {chain_request.method} {chain_request.url}, attempt {current_attempt + 1} of {self._attempt_max}"
            )
            chain_request = new_request

    def __await__(self) -> Generator[Any, None, ChainResponse]:
        return self._do_request().__await__()


class ChainMiddlewareClient:
    """Issues requests on a shared session through a middleware chain."""

    def __init__(
        self,
        client_session: ClientSession,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        timeout: float = 10.0,
        attempt_max: int = 2,
    ) -> None:
        self._client = client_session
        self._middleware = middleware
        self._timeout = ClientTimeout(total=timeout)
        self._attempt_max = attempt_max

    def request(self, method: str, url: str, **kwargs: Any) -> ChainMiddlewareContext:
        return self._make_request(method=method, url=url, **kwargs)

    def get(self, url: str, **kwargs: Any) -> ChainMiddlewareContext:
        return self._make_request(method=hdrs.METH_GET, url=url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> ChainMiddlewareContext:
        return self._make_request(method=hdrs.METH_POST, url=url, **kwargs)

    def _make_request(
        self, method: str, url: str, **kwargs: Any
    ) -> ChainMiddlewareContext:
        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=dict(kwargs.pop("headers", None) or {}),
            kwargs=kwargs,
        )

        end_of_line_middleware = EndOfLineChainMiddleware(
            request_func=self._client.request, timeout=self._timeout
        )

        chain_callback: NextChainCallbackType = end_of_line_middleware.handle

        for mw in reversed(self._middleware or []):
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
            attempt_max=self._attempt_max,
        )
