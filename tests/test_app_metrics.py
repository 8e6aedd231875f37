"""
Unit Tests for the Metrics Abstraction Layer

Covers the NoOp and Telegraf backends and backend selection by name.
"""

from unittest.mock import AsyncMock, Mock, patch

import pytest

from social.graze.notify.app.metrics import (
    MetricsClient,
    NoOpMetricsClient,
    TelegrafCompatibilityClient,
    create_metrics_client,
)


class TestMetricsClientInterface:
    """Test the abstract MetricsClient interface."""

    def test_interface_is_abstract(self):
        """MetricsClient should be abstract and not instantiable."""
        with pytest.raises(TypeError):
            MetricsClient()  # type: ignore[abstract]


class TestNoOpMetricsClient:
    """Test the NoOpMetricsClient implementation."""

    async def test_noop_operations(self):
        client = NoOpMetricsClient()
        client.increment("notify.poll.tick.count", 1, {"feed": "notifications"})
        client.gauge("notify.counts.total", 3)
        client.timer("notify.poll.tick.time", 0.25)
        await client.connect()
        await client.close()


class TestTelegrafCompatibilityClient:
    """Test the TelegrafCompatibilityClient wrapper."""

    @pytest.fixture
    def mock_telegraf_client(self):
        mock = Mock()
        mock.connect = AsyncMock()
        mock.close = AsyncMock()
        return mock

    def test_increment(self, mock_telegraf_client):
        client = TelegrafCompatibilityClient(mock_telegraf_client)
        client.increment("notify.poll.tick.count", 2, {"feed": "messages"})
        mock_telegraf_client.increment.assert_called_once_with(
            "notify.poll.tick.count", 2, tag_dict={"feed": "messages"}
        )

    def test_gauge_without_tags(self, mock_telegraf_client):
        client = TelegrafCompatibilityClient(mock_telegraf_client)
        client.gauge("notify.counts.total", 7)
        mock_telegraf_client.gauge.assert_called_once_with(
            "notify.counts.total", 7, tag_dict={}
        )

    def test_timer(self, mock_telegraf_client):
        client = TelegrafCompatibilityClient(mock_telegraf_client)
        client.timer("notify.poll.tick.time", 0.5, {"feed": "notifications"})
        mock_telegraf_client.timer.assert_called_once_with(
            "notify.poll.tick.time", 0.5, tag_dict={"feed": "notifications"}
        )

    async def test_connect_and_close(self, mock_telegraf_client):
        client = TelegrafCompatibilityClient(mock_telegraf_client)
        await client.connect()
        await client.close()
        mock_telegraf_client.connect.assert_awaited_once()
        mock_telegraf_client.close.assert_awaited_once()

    async def test_close_error_is_logged(self, mock_telegraf_client):
        mock_telegraf_client.close.side_effect = OSError("socket gone")
        client = TelegrafCompatibilityClient(mock_telegraf_client)
        await client.close()


class TestMetricsClientFactory:
    """Test backend selection."""

    def test_none(self):
        assert isinstance(create_metrics_client("none"), NoOpMetricsClient)

    def test_case_insensitive(self):
        assert isinstance(create_metrics_client("NONE"), NoOpMetricsClient)

    @patch("social.graze.notify.app.metrics.TelegrafStatsdClient")
    def test_telegraf(self, mock_telegraf_class):
        client = create_metrics_client("telegraf", host="telegraf", port=8125)

        assert isinstance(client, TelegrafCompatibilityClient)
        mock_telegraf_class.assert_called_once_with(
            host="telegraf", port=8125, debug=False
        )

    def test_invalid_backend(self):
        with pytest.raises(ValueError, match="Invalid metrics backend"):
            create_metrics_client("otel")
