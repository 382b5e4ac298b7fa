from __future__ import annotations

import logging
from typing import Any

import aiohttp

from modules.common import log_event

from .errors import BackendError
from .instructions import parse_instruction_spec
from .types import MarketDraft, ResolveBundle, feed_id_bytes, normalize_feed_id


def _to_int(value: Any, *, field: str, endpoint: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as error:
        raise BackendError(f"{field} is not an integer: {value!r}", endpoint=endpoint) from error


class BackendClient:
    """JSON client for the market backend; the session token rides in a cookie."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        api_base_url: str,
        session_token: str = "",
        timeout_seconds: float = 8.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._logger = logger
        self._api_base_url = api_base_url.rstrip("/")
        self._session_token = session_token
        self._timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Backend HTTP session is not initialized.")

        endpoint = f"{self._api_base_url}{path}"
        headers = {"Content-Type": "application/json"}
        if self._session_token:
            headers["Cookie"] = f"session={self._session_token}"

        try:
            async with self._session.post(endpoint, json=payload, headers=headers) as response:
                status_code = response.status
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, ValueError) as error:
            raise BackendError(f"Backend request failed: {error}", endpoint=path) from error

        if status_code >= 400:
            message = body.get("message") or body.get("error") if isinstance(body, dict) else body
            raise BackendError(
                f"Backend request failed: status={status_code} message={message}",
                status=status_code,
                endpoint=path,
            )
        if not isinstance(body, dict):
            raise BackendError(f"Unexpected backend response: {body!r}", status=status_code, endpoint=path)
        if body.get("ok") is False:
            raise BackendError(
                f"Backend rejected request: {body.get('message') or 'ok=false'}",
                status=status_code,
                endpoint=path,
            )
        return body

    async def resolve_instruction_bundle(self, market_pda: str) -> ResolveBundle:
        path = "/markets/resolve/ix"
        body = await self._post(path, {"market_pda": market_pda})

        raw_instructions = body.get("instructions")
        if not isinstance(raw_instructions, list) or not raw_instructions:
            raise BackendError("Resolve bundle has no instructions", endpoint=path)

        feed_id_hex = normalize_feed_id(str(body.get("feed_id_hex") or ""))
        try:
            feed_id_bytes(feed_id_hex)
        except ValueError as error:
            raise BackendError(f"Resolve bundle feed id is invalid: {error}", endpoint=path) from error

        market_id = str(body.get("market_id") or "").strip()
        if not market_id:
            raise BackendError("Resolve bundle market_id is missing", endpoint=path)

        bundle = ResolveBundle(
            ok=True,
            market_id=market_id,
            end_ts=_to_int(body.get("end_ts"), field="end_ts", endpoint=path),
            feed_id_hex=feed_id_hex,
            price_update_index=_to_int(body.get("price_update_index"), field="price_update_index", endpoint=path),
            instructions=tuple(
                parse_instruction_spec(raw, section=f"instructions[{idx}]")
                for idx, raw in enumerate(raw_instructions)
            ),
            message=str(body.get("message") or ""),
        )
        log_event(
            self._logger,
            level="info",
            event="resolve_bundle_received",
            message="Received resolve instruction bundle",
            market_pda=market_pda,
            market_id=bundle.market_id,
            feed_id=bundle.feed_id_hex,
            end_ts=bundle.end_ts,
            price_update_index=bundle.price_update_index,
            instruction_count=len(bundle.instructions),
        )
        return bundle

    async def prepare_bet(self, market_pda: str, side: str, amount_ui: float) -> str:
        normalized_side = side.strip().lower()
        if normalized_side not in {"yes", "no"}:
            raise ValueError(f"side must be 'yes' or 'no', got {side!r}")
        if amount_ui <= 0:
            raise ValueError("amount_ui must be > 0")

        path = "/markets/bets/tx"
        body = await self._post(path, {"market_pda": market_pda, "side": normalized_side, "amount_ui": amount_ui})
        tx_base64 = body.get("tx_base64")
        if not isinstance(tx_base64, str) or not tx_base64:
            raise BackendError("Bet response has no tx_base64", endpoint=path)
        return tx_base64

    async def create_market(self, payload: dict[str, Any]) -> MarketDraft:
        path = "/markets"
        body = await self._post(path, payload)

        market_id = str(body.get("marketId") or "").strip()
        create_tx = body.get("createTx") or body.get("tx")
        if not market_id:
            raise BackendError("Create response has no marketId", endpoint=path)
        if not isinstance(create_tx, str) or not create_tx:
            raise BackendError("Create response has no createTx", endpoint=path)

        place_bet_tx = body.get("placeBetTx")
        return MarketDraft(
            market_id=market_id,
            create_tx_b64=create_tx,
            place_bet_tx_b64=place_bet_tx if isinstance(place_bet_tx, str) and place_bet_tx else None,
            message=str(body.get("message") or ""),
        )

    async def confirm_market(self, payload: dict[str, Any], market_id: str, signature: str) -> dict[str, Any]:
        return await self._post(
            "/markets/confirm",
            {"create": payload, "txSig": signature, "marketId": market_id},
        )
