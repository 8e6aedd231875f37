"""
Metrics abstraction.

Components record metrics through `MetricsClient` so the backend can be switched by
configuration. Two backends exist:

- TelegrafCompatibilityClient: delegates to an aio-statsd `TelegrafStatsdClient`.
- NoOpMetricsClient: drops everything, used in tests and when metrics are disabled.

Metric names used by the service:

- `notify.http.request.time` / `notify.http.request.count` (outbound, tagged by name and status)
- `notify.poll.tick.time` / `notify.poll.tick.count` / `notify.poll.tick.exception` (tagged by feed)
- `notify.poll.downgrade` (a feed was found unsupported for an account)
- `notify.poll.running` (gauge of running poll tasks)
- `notify.counts.total` (gauge of the aggregate unread count)
- `notify.token.exchange` / `notify.token.refresh` (tagged by outcome)
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Union

from aio_statsd import TelegrafStatsdClient

logger = logging.getLogger(__name__)

Number = Union[int, float]
Tags = Optional[Dict[str, Any]]


class MetricsClient(ABC):
    """Vendor neutral counters, gauges and timers."""

    @abstractmethod
    def increment(self, name: str, value: Number = 1, tag_dict: Tags = None) -> None: ...

    @abstractmethod
    def gauge(self, name: str, value: Number, tag_dict: Tags = None) -> None: ...

    @abstractmethod
    def timer(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        """Record a duration in seconds."""

    async def connect(self) -> None:
        return None

    @abstractmethod
    async def close(self) -> None: ...


class TelegrafCompatibilityClient(MetricsClient):
    """Forwards to aio-statsd, always passing a tag dict."""

    def __init__(self, telegraf_client: TelegrafStatsdClient):
        self.client = telegraf_client

    def increment(self, name: str, value: Number = 1, tag_dict: Tags = None) -> None:
        self.client.increment(name, value, tag_dict=tag_dict or {})

    def gauge(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        self.client.gauge(name, value, tag_dict=tag_dict or {})

    def timer(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        self.client.timer(name, value, tag_dict=tag_dict or {})

    async def connect(self) -> None:
        await self.client.connect()

    async def close(self) -> None:
        try:
            await self.client.close()
        except OSError as e:
            logger.warning("statsd socket did not close cleanly: %s", e)


class NoOpMetricsClient(MetricsClient):
    def increment(self, name: str, value: Number = 1, tag_dict: Tags = None) -> None:
        return None

    def gauge(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        return None

    def timer(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        return None

    async def close(self) -> None:
        return None


def create_metrics_client(
    backend: str, host: str = "localhost", port: int = 8125, debug: bool = False
) -> MetricsClient:
    """
    Pick a metrics backend by name, either 'telegraf' or 'none'.

    Raises:
        ValueError: If the backend name is not recognized
    """
    selected = backend.lower()

    if selected == "none":
        logger.info("metrics disabled")
        return NoOpMetricsClient()

    if selected == "telegraf":
        return TelegrafCompatibilityClient(
            TelegrafStatsdClient(host=host, port=port, debug=debug)
        )

    raise ValueError(
        f"Invalid metrics backend: {backend!r}, expected 'telegraf' or 'none'"
    )
