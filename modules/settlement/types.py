from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

EventKind = Literal["start", "success", "warning", "error"]
Classification = Literal["fatal", "soft"]


class StepId(str, Enum):
    FETCH = "fetch"
    POST_INIT = "post:init"
    POST_WRITE = "post:write"
    RESOLVE = "resolve"
    CREATE = "create"
    BET = "bet"
    CONFIRM = "confirm"


class RunState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    POSTING = "posting"
    RESOLVING = "resolving"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class AccountSpec:
    pubkey: str
    is_signer: bool
    is_writable: bool


@dataclass(slots=True, frozen=True)
class InstructionSpec:
    program_id: str
    accounts: tuple[AccountSpec, ...]
    data_b64: str


@dataclass(slots=True, frozen=True)
class PatchOverride:
    account_index: int
    replacement_address: Pubkey
    force_signer_false: bool = False


@dataclass(slots=True, frozen=True)
class ResolveBundle:
    ok: bool
    market_id: str
    end_ts: int
    feed_id_hex: str
    price_update_index: int
    instructions: tuple[InstructionSpec, ...]
    message: str = ""


@dataclass(slots=True, frozen=True)
class AttestationBundle:
    feed_ids: tuple[str, ...]
    publish_time: int
    updates: tuple[bytes, ...]

    @property
    def first(self) -> bytes:
        return self.updates[0]


@dataclass(slots=True, frozen=True)
class TransactionPhase:
    step: StepId
    transaction: VersionedTransaction
    ephemeral_signers: tuple[Keypair, ...] = ()


@dataclass(slots=True, frozen=True)
class PostPlan:
    phases: tuple[TransactionPhase, ...]
    price_update_address: Pubkey


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    kind: EventKind
    step: StepId
    signature: str | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "step": self.step.value,
            "signature": self.signature,
            "message": self.message,
        }


@dataclass(slots=True)
class PipelineResult:
    signatures: list[str] = field(default_factory=list)
    warnings: list[StepId] = field(default_factory=list)
    state: RunState = RunState.IDLE

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "signatures": list(self.signatures),
            "warnings": [step.value for step in self.warnings],
        }


def normalize_feed_id(feed_id_hex: str) -> str:
    value = (feed_id_hex or "").strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    return value


def feed_id_bytes(feed_id_hex: str) -> bytes:
    value = normalize_feed_id(feed_id_hex)
    try:
        raw = bytes.fromhex(value)
    except ValueError as error:
        raise ValueError(f"feed id is not hex: {feed_id_hex!r}") from error
    if len(raw) != 32:
        raise ValueError(f"feed id must be 32 bytes, got {len(raw)}")
    return raw


@dataclass(slots=True, frozen=True)
class MarketDraft:
    """Unsigned market-creation transactions issued by the backend."""

    market_id: str
    create_tx_b64: str
    place_bet_tx_b64: str | None = None
    message: str = ""
