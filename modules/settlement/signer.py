from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Iterable, Protocol, runtime_checkable

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from modules.common import bounded, guarded_call, log_event

from .errors import IncompleteSignature, SettlementError, SubmissionError, TimedOut, WalletUnsupported
from .types import TransactionPhase

CONFIRMED_STATUSES = {"confirmed", "finalized"}


@runtime_checkable
class Wallet(Protocol):
    @property
    def pubkey(self) -> Pubkey:
        ...

    async def sign_transaction(self, transaction: VersionedTransaction) -> VersionedTransaction:
        ...


def sign_with(transaction: VersionedTransaction, signers: Iterable[Keypair]) -> VersionedTransaction:
    """Fill the slots belonging to ``signers``; other slots are left as they are."""
    message = transaction.message
    payload = to_bytes_versioned(message)
    required = message.header.num_required_signatures
    signer_keys = list(message.account_keys[:required])
    signatures = list(transaction.signatures)
    if len(signatures) < required:
        signatures.extend([Signature.default()] * (required - len(signatures)))

    for signer in signers:
        pubkey = signer.pubkey()
        if pubkey not in signer_keys:
            raise IncompleteSignature(f"{pubkey} is not a required signer of this transaction", slot_index=-1)
        signatures[signer_keys.index(pubkey)] = signer.sign_message(payload)

    return VersionedTransaction.populate(message, signatures)


def find_missing_signature(transaction: VersionedTransaction) -> int | None:
    required = transaction.message.header.num_required_signatures
    signatures = list(transaction.signatures)
    for index in range(max(required, len(signatures))):
        if index >= len(signatures):
            return index
        raw = bytes(signatures[index])
        if len(raw) != 64 or not any(raw):
            return index
    return None


def parse_private_key(raw: str) -> Keypair:
    value = raw.strip()
    if not value:
        raise ValueError("PRIVATE_KEY is empty.")

    if value.startswith("["):
        arr = json.loads(value)
        if not isinstance(arr, list):
            raise ValueError("PRIVATE_KEY JSON must be an integer array.")
        try:
            return Keypair.from_bytes(bytes(arr))
        except (TypeError, ValueError) as error:
            raise ValueError("PRIVATE_KEY JSON must hold 64 byte values.") from error

    try:
        return Keypair.from_base58_string(value)
    except ValueError as error:
        raise ValueError("Unsupported PRIVATE_KEY format.") from error


class KeypairWallet:
    """Wallet backed by a local keypair, for scripted runs."""

    def __init__(self, keypair: Keypair) -> None:
        self._keypair = keypair

    @classmethod
    def from_private_key(cls, raw: str) -> "KeypairWallet":
        return cls(parse_private_key(raw))

    @property
    def pubkey(self) -> Pubkey:
        return self._keypair.pubkey()

    async def sign_transaction(self, transaction: VersionedTransaction) -> VersionedTransaction:
        return sign_with(transaction, [self._keypair])


def _status_name(value: Any) -> str:
    if value is None:
        return ""
    return str(value).rsplit(".", 1)[-1].strip().lower()


class LedgerClient:
    """Thin adapter over the solana-py async RPC client.

    One instance may be shared by concurrent runs; the underlying HTTP client
    handles concurrent in-flight requests.
    """

    def __init__(self, *, rpc_url: str, client: AsyncClient | None = None) -> None:
        self._rpc_url = rpc_url
        self._client = client

    def _rpc(self) -> AsyncClient:
        if self._client is None:
            if not self._rpc_url:
                raise ValueError("SOLANA_RPC_URL is required.")
            self._client = AsyncClient(self._rpc_url, commitment=Confirmed)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def latest_blockhash(self) -> Hash:
        response = await self._rpc().get_latest_blockhash(commitment=Confirmed)
        return response.value.blockhash

    async def simulate(self, transaction: VersionedTransaction) -> dict[str, Any]:
        response = await self._rpc().simulate_transaction(transaction, sig_verify=False, commitment=Confirmed)
        value = response.value
        return {
            "err": None if value.err is None else str(value.err),
            "logs": list(value.logs or []),
            "units_consumed": value.units_consumed,
        }

    async def send_raw_transaction(self, raw: bytes) -> str:
        response = await self._rpc().send_raw_transaction(
            raw,
            opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed, skip_confirmation=True),
        )
        return str(response.value)

    async def signature_status(self, signature: str) -> dict[str, Any] | None:
        response = await self._rpc().get_signature_statuses(
            [Signature.from_string(signature)],
            search_transaction_history=True,
        )
        status = response.value[0] if response.value else None
        if status is None:
            return None
        return {
            "slot": status.slot,
            "err": None if status.err is None else str(status.err),
            "confirmation_status": _status_name(status.confirmation_status),
        }


class TransactionSubmitter:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        ledger: LedgerClient,
        sign_timeout_seconds: float | None = 120.0,
        confirm_timeout_seconds: float = 45.0,
        confirm_poll_interval_seconds: float = 1.0,
    ) -> None:
        self._logger = logger
        self._ledger = ledger
        self._sign_timeout_seconds = sign_timeout_seconds
        self._confirm_timeout_seconds = confirm_timeout_seconds
        self._confirm_poll_interval_seconds = confirm_poll_interval_seconds

    @property
    def ledger(self) -> LedgerClient:
        return self._ledger

    async def simulate(self, phase: TransactionPhase) -> dict[str, Any] | None:
        """Diagnostic dry run. Never raises and never gates submission."""
        result = await guarded_call(
            lambda: self._ledger.simulate(phase.transaction),
            logger=self._logger,
            event="simulation_failed",
            message="Pre-submit simulation could not be run",
            step=phase.step.value,
        )
        if result is not None and result.get("err") is not None:
            log_event(
                self._logger,
                level="warning",
                event="simulation_reported_error",
                message="Pre-submit simulation reported an error; submitting anyway",
                step=phase.step.value,
                error=result.get("err"),
                logs=result.get("logs", [])[-10:],
            )
        return result

    async def submit(self, phase: TransactionPhase, wallet: Wallet) -> str:
        signed = await self._sign(phase, wallet)

        missing = find_missing_signature(signed)
        if missing is not None:
            raise IncompleteSignature(f"[{phase.step.value}] missing/zero signature at index {missing}", slot_index=missing)

        expected_signature = str(signed.signatures[0])
        try:
            signature = await self._ledger.send_raw_transaction(bytes(signed))
        except asyncio.CancelledError:
            raise
        except SettlementError:
            raise
        except Exception as error:
            raise SubmissionError(f"[{phase.step.value}] {error}", signature=expected_signature) from error

        log_event(
            self._logger,
            level="info",
            event="transaction_submitted",
            message="Transaction submitted",
            step=phase.step.value,
            tx_signature=signature,
        )
        await self._wait_for_confirmation(signature, step=phase.step.value)
        return signature

    async def _sign(self, phase: TransactionPhase, wallet: Wallet) -> VersionedTransaction:
        if not isinstance(wallet, Wallet) or not callable(wallet.sign_transaction) or wallet.pubkey is None:
            raise WalletUnsupported("Wallet lacks sign_transaction()")

        try:
            signed = await bounded(
                wallet.sign_transaction(phase.transaction),
                timeout_seconds=self._sign_timeout_seconds,
            )
        except asyncio.TimeoutError as error:
            raise TimedOut(
                f"[{phase.step.value}] wallet did not sign within {self._sign_timeout_seconds}s"
            ) from error

        if phase.ephemeral_signers:
            signed = sign_with(signed, phase.ephemeral_signers)
        return signed

    async def _wait_for_confirmation(self, signature: str, *, step: str) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._confirm_timeout_seconds

        while True:
            try:
                status = await self._ledger.signature_status(signature)
            except asyncio.CancelledError:
                raise
            except Exception as error:
                status = None
                log_event(
                    self._logger,
                    level="warning",
                    event="signature_status_failed",
                    message="Failed to fetch signature status; will poll again",
                    step=step,
                    tx_signature=signature,
                    error=str(error),
                )

            if status is not None:
                if status.get("err") is not None:
                    raise SubmissionError(
                        f"[{step}] transaction failed on-chain: {status['err']}",
                        signature=signature,
                    )
                if status.get("confirmation_status") in CONFIRMED_STATUSES:
                    log_event(
                        self._logger,
                        level="info",
                        event="transaction_confirmed",
                        message="Transaction confirmed",
                        step=step,
                        tx_signature=signature,
                        slot=status.get("slot"),
                    )
                    return status

            if loop.time() >= deadline:
                raise TimedOut(
                    f"[{step}] transaction {signature} was not confirmed within {self._confirm_timeout_seconds}s",
                    signature=signature,
                )
            await asyncio.sleep(self._confirm_poll_interval_seconds)
