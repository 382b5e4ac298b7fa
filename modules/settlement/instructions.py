from __future__ import annotations

import base64
import binascii
from typing import Any, Iterable

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.sysvar import CLOCK as CLOCK_SYSVAR_ID
from solders.transaction import VersionedTransaction

from .errors import DecodeError
from .types import AccountSpec, InstructionSpec, PatchOverride

# Neither account can ever sign; stale templates sometimes mark them anyway.
RESERVED_NON_SIGNERS = frozenset({SYSTEM_PROGRAM_ID, CLOCK_SYSVAR_ID})


def _parse_pubkey(value: Any, *, section: str) -> Pubkey:
    text = str(value or "").strip()
    if not text:
        raise DecodeError(f"Address is missing in {section}")
    try:
        return Pubkey.from_string(text)
    except ValueError as error:
        raise DecodeError(f"Address is invalid in {section}: {text!r}") from error


def parse_instruction_spec(raw: Any, *, section: str = "instruction") -> InstructionSpec:
    if not isinstance(raw, dict):
        raise DecodeError(f"Invalid instruction payload in {section}: {raw!r}")

    program_id = str(raw.get("program_id") or "").strip()
    if not program_id:
        raise DecodeError(f"Instruction program_id is missing in {section}")

    raw_accounts = raw.get("accounts")
    if not isinstance(raw_accounts, list):
        raise DecodeError(f"Instruction accounts are missing in {section}")

    accounts: list[AccountSpec] = []
    for idx, account in enumerate(raw_accounts):
        if not isinstance(account, dict):
            raise DecodeError(f"Instruction account[{idx}] is invalid in {section}: {account!r}")
        pubkey = str(account.get("pubkey") or "").strip()
        if not pubkey:
            raise DecodeError(f"Instruction account[{idx}] pubkey is missing in {section}")
        accounts.append(
            AccountSpec(
                pubkey=pubkey,
                is_signer=bool(account.get("is_signer")),
                is_writable=bool(account.get("is_writable")),
            )
        )

    data_b64 = raw.get("data_b64")
    if not isinstance(data_b64, str):
        raise DecodeError(f"Instruction data_b64 is missing in {section}")

    return InstructionSpec(program_id=program_id, accounts=tuple(accounts), data_b64=data_b64)


def decode_instruction(spec: InstructionSpec, *, section: str = "instruction") -> Instruction:
    """Turn a server-issued template into a native instruction.

    No semantic checks are made (account counts, program ownership); that is
    the server's contract. Only the transport encoding is validated.
    """
    program_id = _parse_pubkey(spec.program_id, section=f"{section}.program_id")
    metas = [
        AccountMeta(
            pubkey=_parse_pubkey(account.pubkey, section=f"{section}.accounts[{idx}]"),
            is_signer=account.is_signer,
            is_writable=account.is_writable,
        )
        for idx, account in enumerate(spec.accounts)
    ]

    try:
        data = base64.b64decode(spec.data_b64, validate=True)
    except (binascii.Error, ValueError) as error:
        raise DecodeError(f"Instruction data decode failed in {section}: {error}") from error

    return Instruction(program_id, data, metas)


def decode_instruction_list(specs: Iterable[InstructionSpec], *, section: str = "instructions") -> list[Instruction]:
    return [decode_instruction(spec, section=f"{section}[{index}]") for index, spec in enumerate(specs)]


def patch_instruction(
    instruction: Instruction,
    override: PatchOverride | None = None,
    force_non_signer: Iterable[Pubkey] = (),
) -> Instruction:
    """Return a copy of ``instruction`` with one slot substituted and signer flags corrected.

    Only the overridden slot and accounts in the forced non-signer set (plus the
    system program and clock sysvar) can change. Program id, payload and
    writable flags are passed through untouched.
    """
    forced = RESERVED_NON_SIGNERS | frozenset(force_non_signer)
    metas: list[AccountMeta] = []
    for idx, meta in enumerate(instruction.accounts):
        pubkey = meta.pubkey
        is_signer = meta.is_signer
        if override is not None and override.account_index == idx:
            pubkey = override.replacement_address
            if override.force_signer_false:
                is_signer = False
        if pubkey in forced:
            is_signer = False
        metas.append(AccountMeta(pubkey=pubkey, is_signer=is_signer, is_writable=meta.is_writable))

    return Instruction(instruction.program_id, bytes(instruction.data), metas)


def is_placeholder_address(address: str) -> bool:
    try:
        return Pubkey.from_string(address) in RESERVED_NON_SIGNERS
    except ValueError:
        return False


def resolve_placeholder_override(
    spec: InstructionSpec,
    *,
    account_index: int,
    replacement_address: Pubkey,
) -> PatchOverride | None:
    """Override the slot only when the server left a placeholder there."""
    if account_index < 0 or account_index >= len(spec.accounts):
        return None
    if not is_placeholder_address(spec.accounts[account_index].pubkey):
        return None
    return PatchOverride(
        account_index=account_index,
        replacement_address=replacement_address,
        force_signer_false=True,
    )


def decode_transaction_b64(value: Any, *, section: str = "transaction") -> VersionedTransaction:
    """Decode a server-built transaction; legacy and v0 messages are both accepted."""
    text = str(value or "").strip()
    if not text:
        raise DecodeError(f"Transaction is missing in {section}")
    try:
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as error:
        raise DecodeError(f"Transaction base64 decode failed in {section}: {error}") from error
    try:
        return VersionedTransaction.from_bytes(raw)
    except ValueError as error:
        raise DecodeError(f"Transaction deserialization failed in {section}: {error}") from error
