from __future__ import annotations

import asyncio
import struct
from typing import Any

from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

BTC_FEED_ID = "e62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43"
ETH_FEED_ID = "ff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace"
RECEIVER_PROGRAM_ID = Pubkey.from_string("rec5EKMGg6MxZYaMdyBfgwp4d5rB9T1VQH5pJv5LtFJ")
WORMHOLE_PROGRAM_ID = Pubkey.from_string("HDwcJBJXjL9FpJ7UBsYBtaDjsBUhuLCUYoz3zr8SWWaQ")
PUBLISH_TIME = 1_735_689_600


def price_feed_message(
    feed_id_hex: str = BTC_FEED_ID,
    *,
    price: int = 9_512_345_000_000,
    conf: int = 4_200_000,
    exponent: int = -8,
    publish_time: int = PUBLISH_TIME,
) -> bytes:
    return struct.pack(
        ">B32sqQiqqqQ",
        0,
        bytes.fromhex(feed_id_hex),
        price,
        conf,
        exponent,
        publish_time,
        publish_time - 1,
        price - 1_000,
        conf + 10,
    )


def vaa(*, signature_count: int, guardian_set_index: int = 4, body_size: int = 100) -> bytes:
    header = struct.pack(">BIB", 1, guardian_set_index, signature_count)
    signatures = b"".join(bytes([index]) + b"\x11" * 65 for index in range(signature_count))
    return header + signatures + b"\x07" * body_size


def accumulator_update(
    *,
    signature_count: int = 1,
    feed_ids: tuple[str, ...] = (BTC_FEED_ID,),
    proof_length: int = 10,
) -> bytes:
    signed_vaa = vaa(signature_count=signature_count)
    data = b"PNAU" + bytes([1, 0]) + bytes([0]) + bytes([0])
    data += struct.pack(">H", len(signed_vaa)) + signed_vaa
    data += bytes([len(feed_ids)])
    for feed_id in feed_ids:
        message = price_feed_message(feed_id)
        data += struct.pack(">H", len(message)) + message
        data += bytes([proof_length]) + b"\x22" * (20 * proof_length)
    return data


class FakeLedger:
    """In-memory stand-in for ``LedgerClient``.

    ``send_results`` is consumed one entry per send: an exception is raised,
    anything else means "accept and return the fee-payer signature".
    """

    def __init__(
        self,
        *,
        send_results: list[Any] | None = None,
        statuses: list[dict[str, Any] | None] | None = None,
        simulate_error: Exception | None = None,
    ) -> None:
        self.sent: list[VersionedTransaction] = []
        self.simulated: list[VersionedTransaction] = []
        self.send_results = list(send_results or [])
        self.statuses = statuses
        self.simulate_error = simulate_error
        self.blockhash_calls = 0

    async def latest_blockhash(self) -> Hash:
        self.blockhash_calls += 1
        return Hash.default()

    async def simulate(self, transaction: VersionedTransaction) -> dict[str, Any]:
        self.simulated.append(transaction)
        if self.simulate_error is not None:
            raise self.simulate_error
        return {"err": None, "logs": ["Program log: ok"], "units_consumed": 1_000}

    async def send_raw_transaction(self, raw: bytes) -> str:
        transaction = VersionedTransaction.from_bytes(raw)
        outcome = self.send_results.pop(0) if self.send_results else None
        if isinstance(outcome, Exception):
            raise outcome
        self.sent.append(transaction)
        return str(transaction.signatures[0])

    async def signature_status(self, signature: str) -> dict[str, Any] | None:
        if self.statuses is None:
            return {"slot": 1, "err": None, "confirmation_status": "confirmed"}
        if not self.statuses:
            return None
        return self.statuses.pop(0)

    async def close(self) -> None:
        return None


class SlowWallet:
    def __init__(self, pubkey: Pubkey, delay_seconds: float) -> None:
        self.pubkey = pubkey
        self._delay_seconds = delay_seconds

    async def sign_transaction(self, transaction: VersionedTransaction) -> VersionedTransaction:
        await asyncio.sleep(self._delay_seconds)
        return transaction


class WithholdingWallet:
    """Returns the transaction without filling its own signature slot."""

    def __init__(self, pubkey: Pubkey) -> None:
        self.pubkey = pubkey
        self.calls = 0

    async def sign_transaction(self, transaction: VersionedTransaction) -> VersionedTransaction:
        self.calls += 1
        return transaction


class RefusingWallet:
    """Raises from ``sign_transaction`` without handing anything back."""

    def __init__(self, pubkey: Pubkey, message: str) -> None:
        self.pubkey = pubkey
        self._message = message

    async def sign_transaction(self, transaction: VersionedTransaction) -> VersionedTransaction:
        raise RuntimeError(self._message)
