from __future__ import annotations

import base64
import logging
import unittest
from typing import Any

from aiohttp import web
from aiohttp.test_utils import TestServer
from settlement_fixtures import BTC_FEED_ID, PUBLISH_TIME, accumulator_update
from solders.pubkey import Pubkey

from modules.settlement.attestation import HermesAttestationFetcher
from modules.settlement.backend import BackendClient
from modules.settlement.errors import BackendError, DecodeError, NoAttestationData


class _StubServerTestCase(unittest.IsolatedAsyncioTestCase):
    """Serves canned JSON responses and records what the client sent."""

    async def asyncSetUp(self) -> None:
        self.requests: list[dict[str, Any]] = []
        self.status = 200
        self.body: Any = {}
        app = web.Application()
        self.add_routes(app)
        self.server = TestServer(app)
        await self.server.start_server()
        self.base_url = str(self.server.make_url("/"))
        self.logger = logging.getLogger(f"test.{type(self).__name__}")

    async def asyncTearDown(self) -> None:
        await self.server.close()

    def add_routes(self, app: web.Application) -> None:
        raise NotImplementedError

    async def handle(self, request: web.Request) -> web.Response:
        payload = await request.json() if request.can_read_body else None
        self.requests.append(
            {
                "method": request.method,
                "path": request.path,
                "match": dict(request.match_info),
                "query": dict(request.query),
                "cookies": dict(request.cookies),
                "json": payload,
            }
        )
        return web.json_response(self.body, status=self.status)


class HermesAttestationFetcherTests(_StubServerTestCase):
    def add_routes(self, app: web.Application) -> None:
        app.router.add_get("/v2/updates/price/{publish_time}", self.handle)

    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.fetcher = HermesAttestationFetcher(logger=self.logger, api_base_url=self.base_url)

    async def asyncTearDown(self) -> None:
        await self.fetcher.close()
        await super().asyncTearDown()

    async def test_fetch_decodes_updates(self) -> None:
        update = accumulator_update()
        self.body = {"binary": {"encoding": "base64", "data": [base64.b64encode(update).decode()]}}

        bundle = await self.fetcher.fetch("0x" + BTC_FEED_ID.upper(), PUBLISH_TIME)

        self.assertEqual(bundle.first, update)
        self.assertEqual(bundle.feed_ids, (BTC_FEED_ID,))
        self.assertEqual(bundle.publish_time, PUBLISH_TIME)
        self.assertEqual(len(self.requests), 1)
        request = self.requests[0]
        self.assertEqual(request["match"], {"publish_time": str(PUBLISH_TIME)})
        self.assertEqual(request["query"], {"ids[]": f"0x{BTC_FEED_ID}", "encoding": "base64"})

    async def test_empty_data_raises(self) -> None:
        self.body = {"binary": {"encoding": "base64", "data": []}}
        with self.assertRaises(NoAttestationData):
            await self.fetcher.fetch(BTC_FEED_ID, PUBLISH_TIME)

    async def test_error_status_raises_without_retry(self) -> None:
        self.status = 404
        self.body = {"error": "price unavailable"}
        with self.assertRaises(NoAttestationData):
            await self.fetcher.fetch(BTC_FEED_ID, PUBLISH_TIME)
        self.assertEqual(len(self.requests), 1)

    async def test_bad_base64_raises(self) -> None:
        self.body = {"binary": {"encoding": "base64", "data": ["@@@"]}}
        with self.assertRaises(NoAttestationData):
            await self.fetcher.fetch(BTC_FEED_ID, PUBLISH_TIME)

    async def test_missing_binary_section_raises(self) -> None:
        self.body = {"parsed": []}
        with self.assertRaises(NoAttestationData):
            await self.fetcher.fetch(BTC_FEED_ID, PUBLISH_TIME)


class BackendClientTests(_StubServerTestCase):
    def add_routes(self, app: web.Application) -> None:
        app.router.add_post("/markets/resolve/ix", self.handle)
        app.router.add_post("/markets/bets/tx", self.handle)
        app.router.add_post("/markets", self.handle)
        app.router.add_post("/markets/confirm", self.handle)

    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.client = BackendClient(logger=self.logger, api_base_url=self.base_url, session_token="tok-123")
        self.market = Pubkey.new_unique()

    async def asyncTearDown(self) -> None:
        await self.client.close()
        await super().asyncTearDown()

    def _resolve_body(self) -> dict[str, Any]:
        return {
            "ok": True,
            "market_id": str(self.market),
            "end_ts": PUBLISH_TIME,
            "feed_id_hex": "0x" + BTC_FEED_ID,
            "price_update_index": 3,
            "instructions": [
                {
                    "program_id": str(Pubkey.new_unique()),
                    "accounts": [{"pubkey": str(self.market), "is_signer": False, "is_writable": True}],
                    "data_b64": "AQID",
                }
            ],
            "message": "ok",
        }

    async def test_resolve_bundle_is_parsed(self) -> None:
        self.body = self._resolve_body()

        bundle = await self.client.resolve_instruction_bundle("MarketPda111")

        self.assertEqual(bundle.market_id, str(self.market))
        self.assertEqual(bundle.feed_id_hex, BTC_FEED_ID)
        self.assertEqual(bundle.end_ts, PUBLISH_TIME)
        self.assertEqual(bundle.price_update_index, 3)
        self.assertEqual(len(bundle.instructions), 1)
        self.assertEqual(bundle.instructions[0].data_b64, "AQID")
        request = self.requests[0]
        self.assertEqual(request["path"], "/markets/resolve/ix")
        self.assertEqual(request["json"], {"market_pda": "MarketPda111"})
        self.assertEqual(request["cookies"], {"session": "tok-123"})

    async def test_resolve_bundle_rejections(self) -> None:
        cases = {
            "ok_false": {**self._resolve_body(), "ok": False, "message": "market not ended"},
            "no_instructions": {**self._resolve_body(), "instructions": []},
            "bad_feed": {**self._resolve_body(), "feed_id_hex": "abc"},
            "bad_index": {**self._resolve_body(), "price_update_index": "x"},
        }
        for name, body in cases.items():
            self.body = body
            with self.subTest(name=name), self.assertRaises(BackendError):
                await self.client.resolve_instruction_bundle("MarketPda111")

    async def test_malformed_instruction_is_a_decode_error(self) -> None:
        body = self._resolve_body()
        body["instructions"][0].pop("data_b64")
        self.body = body
        with self.assertRaises(DecodeError):
            await self.client.resolve_instruction_bundle("MarketPda111")

    async def test_http_error_carries_status(self) -> None:
        self.status = 401
        self.body = {"message": "unauthorized"}
        with self.assertRaises(BackendError) as ctx:
            await self.client.resolve_instruction_bundle("MarketPda111")
        self.assertEqual(ctx.exception.status, 401)
        self.assertEqual(ctx.exception.endpoint, "/markets/resolve/ix")

    async def test_prepare_bet(self) -> None:
        self.body = {"ok": True, "tx_base64": "AAAA"}

        tx_base64 = await self.client.prepare_bet("MarketPda111", "YES", 2.5)

        self.assertEqual(tx_base64, "AAAA")
        self.assertEqual(self.requests[0]["json"], {"market_pda": "MarketPda111", "side": "yes", "amount_ui": 2.5})

    async def test_prepare_bet_validates_input_locally(self) -> None:
        with self.assertRaises(ValueError):
            await self.client.prepare_bet("MarketPda111", "maybe", 1.0)
        with self.assertRaises(ValueError):
            await self.client.prepare_bet("MarketPda111", "no", 0)
        self.assertEqual(self.requests, [])

    async def test_create_and_confirm_market(self) -> None:
        self.body = {"ok": True, "marketId": "Mkt1", "createTx": "Q1JFQVRF", "placeBetTx": "QkVU", "message": ""}
        draft = await self.client.create_market({"symbol": "BTC/USD"})

        self.assertEqual(draft.market_id, "Mkt1")
        self.assertEqual(draft.create_tx_b64, "Q1JFQVRF")
        self.assertEqual(draft.place_bet_tx_b64, "QkVU")

        self.body = {"ok": True}
        await self.client.confirm_market({"symbol": "BTC/USD"}, "Mkt1", "sig-1")
        self.assertEqual(
            self.requests[-1]["json"],
            {"create": {"symbol": "BTC/USD"}, "txSig": "sig-1", "marketId": "Mkt1"},
        )

    async def test_create_market_without_transaction_raises(self) -> None:
        self.body = {"ok": True, "marketId": "Mkt1"}
        with self.assertRaises(BackendError):
            await self.client.create_market({})


if __name__ == "__main__":
    unittest.main()
