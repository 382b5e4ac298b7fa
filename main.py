from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import Any, Sequence

from dotenv import load_dotenv
from solders.pubkey import Pubkey

from modules.runtime import AppSettings, setup_logger
from modules.settlement import (
    BackendClient,
    BetPlacementFlow,
    HermesAttestationFetcher,
    KeypairWallet,
    LedgerClient,
    MarketCreationFlow,
    PipelineResult,
    PostPhaseBuilder,
    SettlementAborted,
    SettlementRun,
    TransactionSubmitter,
)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sign and submit prediction-market settlement transactions.")
    commands = parser.add_subparsers(dest="command", required=True)

    resolve = commands.add_parser("resolve", help="Post the price attestation and resolve a market.")
    resolve.add_argument("market_pda")

    bet = commands.add_parser("bet", help="Place a bet on a market.")
    bet.add_argument("market_pda")
    bet.add_argument("side", choices=["yes", "no"])
    bet.add_argument("amount", type=float)

    create = commands.add_parser("create", help="Create a market from a JSON payload file.")
    create.add_argument("payload_file")

    return parser.parse_args(argv)


def emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, ensure_ascii=False, default=str))


def build_signing_setup(
    command: str,
    *,
    logger: logging.Logger,
    app_settings: AppSettings,
) -> tuple[KeypairWallet, PostPhaseBuilder | None]:
    """Parse the key and program ids up front; raises ValueError on bad config."""
    wallet = KeypairWallet.from_private_key(app_settings.private_key)
    if command != "resolve":
        return wallet, None
    builder = PostPhaseBuilder(
        logger=logger,
        receiver_program_id=Pubkey.from_string(app_settings.receiver_program_id),
        wormhole_program_id=Pubkey.from_string(app_settings.wormhole_program_id),
        compute_unit_price_micro_lamports=app_settings.compute_unit_price_micro_lamports,
    )
    return wallet, builder


async def run_command(
    args: argparse.Namespace,
    *,
    logger: logging.Logger,
    app_settings: AppSettings,
    wallet: KeypairWallet,
    builder: PostPhaseBuilder | None,
) -> PipelineResult:
    ledger = LedgerClient(rpc_url=app_settings.solana_rpc_url)
    submitter = TransactionSubmitter(
        logger=logger,
        ledger=ledger,
        sign_timeout_seconds=app_settings.sign_timeout_seconds,
        confirm_timeout_seconds=app_settings.confirm_timeout_seconds,
        confirm_poll_interval_seconds=app_settings.confirm_poll_interval_seconds,
    )
    backend = BackendClient(
        logger=logger,
        api_base_url=app_settings.backend_api_url,
        session_token=app_settings.backend_session_token,
        timeout_seconds=app_settings.http_timeout_seconds,
    )
    fetcher = HermesAttestationFetcher(
        logger=logger,
        api_base_url=app_settings.hermes_url,
        timeout_seconds=app_settings.http_timeout_seconds,
    )

    def on_progress(event: Any) -> None:
        emit({"progress": event.to_dict()})

    try:
        await backend.connect()
        if args.command == "resolve":
            await fetcher.connect()
            run = SettlementRun(
                logger=logger,
                backend=backend,
                fetcher=fetcher,
                builder=builder,
                submitter=submitter,
                wallet=wallet,
                compute_unit_price_micro_lamports=app_settings.compute_unit_price_micro_lamports,
                close_update_accounts=app_settings.close_update_accounts,
                on_progress=on_progress,
            )
            return await run.run(args.market_pda)

        if args.command == "bet":
            flow = BetPlacementFlow(
                logger=logger,
                backend=backend,
                submitter=submitter,
                wallet=wallet,
                on_progress=on_progress,
            )
            return await flow.run(args.market_pda, args.side, args.amount)

        with open(args.payload_file, encoding="utf-8") as handle:
            payload = json.load(handle)
        creation = MarketCreationFlow(
            logger=logger,
            backend=backend,
            submitter=submitter,
            wallet=wallet,
            on_progress=on_progress,
        )
        return await creation.run(payload)
    finally:
        with contextlib.suppress(Exception):
            await fetcher.close()
        with contextlib.suppress(Exception):
            await backend.close()
        with contextlib.suppress(Exception):
            await ledger.close()


async def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    logger = setup_logger()
    args = parse_args(argv)
    app_settings = AppSettings.from_env()

    task = asyncio.current_task()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        logger.info(
            "Shutdown signal received",
            extra={"event": "shutdown_signal_received", "signal": sig.name},
        )
        if task is not None:
            task.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    try:
        wallet, builder = build_signing_setup(args.command, logger=logger, app_settings=app_settings)
    except ValueError as error:
        logger.error("Invalid signing configuration", extra={"event": "config_invalid", "error": str(error)})
        emit({"ok": False, "failed_step": "config", "error": str(error), "last_signature": None, "result": None})
        return 1

    try:
        result = await run_command(args, logger=logger, app_settings=app_settings, wallet=wallet, builder=builder)
    except SettlementAborted as error:
        emit(
            {
                "ok": False,
                "failed_step": error.step.value,
                "error": str(error.cause),
                "last_signature": error.last_signature,
                "result": error.result.to_dict(),
            }
        )
        return 1
    except asyncio.CancelledError:
        logger.warning("Run cancelled", extra={"event": "run_cancelled", "command": args.command})
        return 130

    emit({"ok": True, "has_warnings": result.has_warnings, "result": result.to_dict()})
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
