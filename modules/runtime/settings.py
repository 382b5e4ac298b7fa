from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

DEFAULT_RPC_URL = "https://api.devnet.solana.com"
DEFAULT_HERMES_URL = "https://hermes.pyth.network"
DEFAULT_BACKEND_API_URL = "http://localhost:8080/v1"
DEFAULT_RECEIVER_PROGRAM_ID = "rec5EKMGg6MxZYaMdyBfgwp4d5rB9T1VQH5pJv5LtFJ"
DEFAULT_WORMHOLE_PROGRAM_ID = "HDwcJBJXjL9FpJ7UBsYBtaDjsBUhuLCUYoz3zr8SWWaQ"


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


@dataclass(slots=True)
class AppSettings:
    solana_rpc_url: str
    hermes_url: str
    backend_api_url: str
    backend_session_token: str
    private_key: str
    compute_unit_price_micro_lamports: int
    close_update_accounts: bool
    http_timeout_seconds: float
    sign_timeout_seconds: float
    confirm_timeout_seconds: float
    confirm_poll_interval_seconds: float
    receiver_program_id: str
    wormhole_program_id: str

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            solana_rpc_url=os.getenv("SOLANA_RPC_URL", DEFAULT_RPC_URL).strip() or DEFAULT_RPC_URL,
            hermes_url=os.getenv("HERMES_URL", DEFAULT_HERMES_URL).strip() or DEFAULT_HERMES_URL,
            backend_api_url=(
                os.getenv("BACKEND_API_URL", DEFAULT_BACKEND_API_URL).strip() or DEFAULT_BACKEND_API_URL
            ),
            backend_session_token=os.getenv("BACKEND_SESSION_TOKEN", "").strip(),
            private_key=os.getenv("PRIVATE_KEY", ""),
            compute_unit_price_micro_lamports=max(
                0,
                to_int(os.getenv("COMPUTE_UNIT_PRICE_MICRO_LAMPORTS"), 50_000),
            ),
            close_update_accounts=to_bool(os.getenv("CLOSE_UPDATE_ACCOUNTS"), True),
            http_timeout_seconds=max(1.0, to_float(os.getenv("HTTP_TIMEOUT_SECONDS"), 8.0)),
            sign_timeout_seconds=max(1.0, to_float(os.getenv("SIGN_TIMEOUT_SECONDS"), 120.0)),
            confirm_timeout_seconds=max(
                5.0,
                to_float(os.getenv("CONFIRM_TIMEOUT_SECONDS"), 45.0),
            ),
            confirm_poll_interval_seconds=max(
                0.25,
                to_float(os.getenv("CONFIRM_POLL_INTERVAL_SECONDS"), 1.0),
            ),
            receiver_program_id=(
                os.getenv("RECEIVER_PROGRAM_ID", DEFAULT_RECEIVER_PROGRAM_ID).strip()
                or DEFAULT_RECEIVER_PROGRAM_ID
            ),
            wormhole_program_id=(
                os.getenv("WORMHOLE_PROGRAM_ID", DEFAULT_WORMHOLE_PROGRAM_ID).strip()
                or DEFAULT_WORMHOLE_PROGRAM_ID
            ),
        )
