from __future__ import annotations

import base64
import binascii
import logging
from typing import Any

import aiohttp

from modules.common import log_event

from .errors import NoAttestationData
from .types import AttestationBundle, normalize_feed_id


class HermesAttestationFetcher:
    """Single-shot client for Hermes historical price updates. No retries."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        api_base_url: str = "https://hermes.pyth.network",
        timeout_seconds: float = 8.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._logger = logger
        self._api_base_url = api_base_url.rstrip("/")
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

    async def fetch(self, feed_id_hex: str, publish_time: int) -> AttestationBundle:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Hermes HTTP session is not initialized.")

        feed_id = normalize_feed_id(feed_id_hex)
        endpoint = f"{self._api_base_url}/v2/updates/price/{int(publish_time)}"
        params = {"ids[]": f"0x{feed_id}", "encoding": "base64"}

        try:
            async with self._session.get(endpoint, params=params) as response:
                status_code = response.status
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, ValueError) as error:
            raise NoAttestationData(f"Hermes request failed: {error}") from error

        if status_code >= 400:
            raise NoAttestationData(f"Hermes request failed: status={status_code} body={body}")

        updates = self._decode_binary(body)
        log_event(
            self._logger,
            level="info",
            event="attestation_fetched",
            message="Fetched price attestation from Hermes",
            feed_id=feed_id,
            publish_time=int(publish_time),
            update_count=len(updates),
            update_bytes=sum(len(update) for update in updates),
        )
        return AttestationBundle(feed_ids=(feed_id,), publish_time=int(publish_time), updates=updates)

    @staticmethod
    def _decode_binary(body: Any) -> tuple[bytes, ...]:
        if not isinstance(body, dict):
            raise NoAttestationData(f"Unexpected Hermes response: {body!r}")
        binary = body.get("binary")
        if not isinstance(binary, dict):
            raise NoAttestationData("Hermes response has no binary section")

        encoding = str(binary.get("encoding") or "base64").lower()
        if encoding != "base64":
            raise NoAttestationData(f"Hermes returned unsupported encoding {encoding!r}")

        data = binary.get("data")
        if not isinstance(data, list) or not data:
            raise NoAttestationData("Hermes returned empty price updates")

        updates: list[bytes] = []
        for index, item in enumerate(data):
            if not isinstance(item, str) or not item:
                raise NoAttestationData(f"Hermes update[{index}] is empty")
            try:
                updates.append(base64.b64decode(item, validate=True))
            except (binascii.Error, ValueError) as error:
                raise NoAttestationData(f"Hermes update[{index}] is not base64: {error}") from error
        return tuple(updates)
