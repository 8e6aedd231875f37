"""
Shared test configuration and fixtures.

Provides a fake Redis, a scripted stand-in for `aiohttp.ClientSession`, a recording
metrics client and factories for accounts and service components.
"""

import base64
from datetime import datetime, timedelta, timezone
import json
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from cryptography.fernet import Fernet
import fakeredis.aioredis
from multidict import CIMultiDict, CIMultiDictProxy
import pytest
import pytest_asyncio

from social.graze.notify.app.metrics import MetricsClient
from social.graze.notify.app.tasks import TaskHandle
from social.graze.notify.atproto.jwt import generate_dpop_key
from social.graze.notify.atproto.oauth import TokenManager
from social.graze.notify.atproto.pkce import PkceCoordinator
from social.graze.notify.model.account import Account
from social.graze.notify.store.accounts import AccountRegistry
from social.graze.notify.store.secure import RedisSecureStorage

AUTHORIZATION_SERVER = "https://auth.example"
METADATA_URL = f"{AUTHORIZATION_SERVER}/.well-known/oauth-authorization-server"
AUTHORIZE_ENDPOINT = f"{AUTHORIZATION_SERVER}/oauth/authorize"
TOKEN_ENDPOINT = f"{AUTHORIZATION_SERVER}/oauth/token"
PLC_HOSTNAME = "plc.example"
PDS = "https://pds.example"
CLIENT_ID = "https://client.example/client-metadata.json"
REDIRECT_URI = "https://client.example/callback"

ALICE = "did:plc:alice"

AUTHORIZATION_SERVER_METADATA = {
    "issuer": AUTHORIZATION_SERVER,
    "authorization_endpoint": AUTHORIZE_ENDPOINT,
    "token_endpoint": TOKEN_ENDPOINT,
}


def did_document(did: str, handle: str, pds: str = PDS) -> Dict[str, Any]:
    return {
        "id": did,
        "alsoKnownAs": [f"at://{handle}"],
        "service": [
            {
                "id": "#atproto_pds",
                "type": "AtprotoPersonalDataServer",
                "serviceEndpoint": pds,
            }
        ],
    }


def decode_jwt_segment(token: str, index: int) -> Dict[str, Any]:
    """Decode the header (0) or payload (1) of a compact JWT without verifying it."""
    segment = token.split(".")[index]
    padded = segment + "=" * (-len(segment) % 4)
    return json.loads(base64.urlsafe_b64decode(padded))


class FakeResponse:
    """Just enough of `aiohttp.ClientResponse` for the code under test."""

    def __init__(
        self,
        status: int = 200,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.status = status
        self._body = body if body is not None else {}

        header_values = CIMultiDict()
        if isinstance(self._body, str):
            header_values["Content-Type"] = "text/plain"
        else:
            header_values["Content-Type"] = "application/json"
        for key, value in (headers or {}).items():
            header_values[key] = value
        self.headers = CIMultiDictProxy(header_values)
        self.released = False

    async def text(self) -> str:
        if isinstance(self._body, str):
            return self._body
        return json.dumps(self._body)

    async def read(self) -> bytes:
        return (await self.text()).encode()

    async def json(self, content_type: Optional[str] = None) -> Any:
        if isinstance(self._body, str):
            return json.loads(self._body)
        return self._body

    def release(self) -> None:
        self.released = True

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None


Scripted = Union[FakeResponse, Exception, Callable[[Dict[str, Any]], Any]]


class FakeSession:
    """
    Scripted stand-in for `aiohttp.ClientSession`.

    Responses are queued per (method, url). Each request takes the next queued entry;
    the last entry is reused once the queue is down to one. An entry may be a response,
    an exception to raise, or a callable receiving the request kwargs (it may return an
    awaitable).
    """

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], List[Scripted]] = {}
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    def add(self, method: str, url: str, *responses: Scripted) -> None:
        self.routes.setdefault((method.upper(), url), []).extend(responses)

    def calls_to(self, method: str, url: str) -> List[Dict[str, Any]]:
        return [
            kwargs
            for (call_method, call_url, kwargs) in self.calls
            if call_method == method.upper() and call_url == url
        ]

    def _next(self, method: str, url: str, kwargs: Dict[str, Any]) -> Any:
        self.calls.append((method.upper(), url, kwargs))
        queue = self.routes.get((method.upper(), url))
        if not queue:
            raise AssertionError(f"unexpected request {method.upper()} {url}")
        entry = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(entry, Exception):
            raise entry
        if callable(entry) and not isinstance(entry, FakeResponse):
            return entry(kwargs)
        return entry

    async def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        result = self._next(method, url, kwargs)
        if hasattr(result, "__await__"):
            result = await result
        return result

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._next("GET", url, kwargs)

    async def close(self) -> None:
        pass


class MockMetrics(MetricsClient):
    """Records every metric call as (kind, name, value, tags)."""

    def __init__(self) -> None:
        self.records: List[Tuple[str, str, Any, Dict[str, Any]]] = []

    def increment(self, name, value=1, tag_dict=None) -> None:
        self.records.append(("increment", name, value, tag_dict or {}))

    def gauge(self, name, value, tag_dict=None) -> None:
        self.records.append(("gauge", name, value, tag_dict or {}))

    def timer(self, name, value, tag_dict=None) -> None:
        self.records.append(("timer", name, value, tag_dict or {}))

    async def close(self) -> None:
        pass

    def named(self, name: str) -> List[Tuple[str, str, Any, Dict[str, Any]]]:
        return [record for record in self.records if record[1] == name]


class FakeHandle(TaskHandle):
    """A task handle that only runs its tick when the test fires it."""

    def __init__(self) -> None:
        self.cancelled = False
        self.name: Optional[str] = None
        self.interval: Optional[float] = None
        self.func: Optional[Callable[[], Any]] = None

    def start(self, name, interval, func) -> None:
        self.name = name
        self.interval = interval
        self.func = func

    def cancel(self) -> None:
        self.cancelled = True

    async def wait(self) -> None:
        pass

    async def fire(self) -> None:
        assert self.func is not None
        await self.func()


class HandleRecorder:
    """Handle factory that keeps every handle it creates."""

    def __init__(self) -> None:
        self.handles: List[FakeHandle] = []

    def __call__(self) -> FakeHandle:
        handle = FakeHandle()
        self.handles.append(handle)
        return handle

    def live(self, name_fragment: str = "") -> List[FakeHandle]:
        return [
            handle
            for handle in self.handles
            if not handle.cancelled and name_fragment in (handle.name or "")
        ]


def make_account(
    account_id: str = ALICE,
    display_name: str = "alice.example",
    access_token: str = "access-1",
    refresh_token: str = "refresh-1",
    api_base_url: str = PDS,
    lifetime: timedelta = timedelta(hours=1),
    issued_at: Optional[datetime] = None,
    **overrides: Any,
) -> Account:
    dpop_key, _ = generate_dpop_key()
    issued_at = issued_at or datetime.now(timezone.utc)
    values: Dict[str, Any] = {
        "id": account_id,
        "display_name": display_name,
        "access_token": access_token,
        "refresh_token": refresh_token,
        "dpop_jwk": dpop_key.export(private_key=True, as_dict=True),
        "api_base_url": api_base_url,
        "issuer": AUTHORIZATION_SERVER,
        "token_issued_at": issued_at,
        "access_token_expires_at": issued_at + lifetime,
    }
    values.update(overrides)
    return Account(**values)


@pytest.fixture
def encryption_key() -> Fernet:
    return Fernet(Fernet.generate_key())


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def storage(fake_redis_client, encryption_key) -> RedisSecureStorage:
    return RedisSecureStorage(fake_redis_client, encryption_key, prefix="test")


@pytest.fixture
def registry(storage) -> AccountRegistry:
    return AccountRegistry(storage)


@pytest.fixture
def pkce(storage) -> PkceCoordinator:
    return PkceCoordinator(storage, pending_ttl=600, processed_ttl=600)


@pytest.fixture
def metrics() -> MockMetrics:
    return MockMetrics()


@pytest.fixture
def session() -> FakeSession:
    session = FakeSession()
    session.add("GET", METADATA_URL, FakeResponse(body=AUTHORIZATION_SERVER_METADATA))
    session.add(
        "GET",
        f"https://{PLC_HOSTNAME}/{ALICE}",
        FakeResponse(body=did_document(ALICE, "alice.example")),
    )
    return session


@pytest.fixture
def tokens(session, registry, metrics) -> TokenManager:
    return TokenManager(
        session,  # type: ignore[arg-type]
        registry,
        metrics,
        client_id=CLIENT_ID,
        redirect_uri=REDIRECT_URI,
        scope="atproto transition:generic",
        authorization_server=AUTHORIZATION_SERVER,
        plc_hostname=PLC_HOSTNAME,
    )
