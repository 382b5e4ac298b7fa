from __future__ import annotations

import contextlib
import io
import json
import logging
import os
import unittest
from unittest.mock import patch

from solders.keypair import Keypair

import main
from modules.runtime import AppSettings


class SigningSetupTests(unittest.TestCase):
    def _settings(self, **env: str) -> AppSettings:
        with patch.dict(os.environ, env, clear=True):
            return AppSettings.from_env()

    def test_resolve_builds_wallet_and_builder(self) -> None:
        keypair = Keypair()
        wallet, builder = main.build_signing_setup(
            "resolve",
            logger=logging.getLogger("test.main"),
            app_settings=self._settings(PRIVATE_KEY=str(keypair)),
        )

        self.assertEqual(wallet.pubkey, keypair.pubkey())
        self.assertIsNotNone(builder)

    def test_bet_needs_no_builder(self) -> None:
        _, builder = main.build_signing_setup(
            "bet",
            logger=logging.getLogger("test.main"),
            app_settings=self._settings(PRIVATE_KEY=str(Keypair()), RECEIVER_PROGRAM_ID="not-an-address"),
        )
        self.assertIsNone(builder)

    def test_bad_program_id_is_a_value_error(self) -> None:
        with self.assertRaises(ValueError):
            main.build_signing_setup(
                "resolve",
                logger=logging.getLogger("test.main"),
                app_settings=self._settings(PRIVATE_KEY=str(Keypair()), WORMHOLE_PROGRAM_ID="not-an-address"),
            )


class MainConfigErrorTests(unittest.IsolatedAsyncioTestCase):
    async def _main_output(self, argv: list[str], env: dict[str, str]) -> tuple[int, list[dict]]:
        stdout = io.StringIO()
        with patch.dict(os.environ, env, clear=True), patch.object(main, "load_dotenv"):
            with contextlib.redirect_stdout(stdout):
                code = await main.main(argv)
        lines = [json.loads(line) for line in stdout.getvalue().splitlines() if line.strip()]
        return code, lines

    async def test_missing_private_key_is_reported_as_json(self) -> None:
        code, lines = await self._main_output(["bet", "SomeMarket", "yes", "1"], {})

        self.assertEqual(code, 1)
        self.assertEqual(len(lines), 1)
        self.assertFalse(lines[0]["ok"])
        self.assertEqual(lines[0]["failed_step"], "config")
        self.assertIn("PRIVATE_KEY", lines[0]["error"])
        self.assertIsNone(lines[0]["last_signature"])

    async def test_bad_receiver_program_id_is_reported_as_json(self) -> None:
        env = {"PRIVATE_KEY": str(Keypair()), "RECEIVER_PROGRAM_ID": "not-an-address"}
        code, lines = await self._main_output(["resolve", "SomeMarket"], env)

        self.assertEqual(code, 1)
        self.assertEqual(lines[0]["failed_step"], "config")


if __name__ == "__main__":
    unittest.main()
