from __future__ import annotations

import unittest

from fakes import FakeHistoryConnection
from feed_schema import UpstreamDataError
from history_client import DerivHistoryClient, HistoryFetchError


class DerivHistoryClientTest(unittest.IsolatedAsyncioTestCase):
    def make_client(self, connection: FakeHistoryConnection) -> DerivHistoryClient:
        return DerivHistoryClient(
            "wss://example.test/ws",
            timeout=1.0,
            connect_factory=lambda url, **kwargs: connection,
        )

    async def test_fetch_range_sends_one_shot_request(self) -> None:
        connection = FakeHistoryConnection(
            [
                {"msg_type": "ping"},
                {"msg_type": "history", "history": {"times": [3, 4], "prices": [1.5, 1.6]}},
            ]
        )
        client = self.make_client(connection)

        pairs = await client.fetch_range("R_100", 3, 4, 2)

        assert pairs == [(3, 1.5), (4, 1.6)]
        assert connection.sent == [
            {"ticks_history": "R_100", "start": 3, "end": "4", "count": 2, "style": "ticks"}
        ]

    async def test_fetch_latest(self) -> None:
        connection = FakeHistoryConnection([{"history": {"times": [9], "prices": [2.0]}}])
        pairs = await self.make_client(connection).fetch_latest("R_100", 100)
        assert pairs == [(9, 2.0)]
        assert connection.sent[0]["end"] == "latest"

    async def test_server_error_is_upstream_error(self) -> None:
        connection = FakeHistoryConnection([{"error": {"code": "MarketIsClosed", "message": "closed"}}])
        with self.assertRaises(UpstreamDataError):
            await self.make_client(connection).fetch_latest("R_100", 10)

    async def test_closed_without_reply(self) -> None:
        with self.assertRaises(HistoryFetchError):
            await self.make_client(FakeHistoryConnection([])).fetch_latest("R_100", 10)
