from __future__ import annotations

import json
import os
import tempfile
import unittest
from datetime import timedelta
from pathlib import Path
from typing import Any
from unittest import mock

from typer.testing import CliRunner

from timesheet_cli import app as app_mod
from timesheet_cli.util.common import iso_utc, now_utc
from timesheet_cli.util.errors import AUTH_HINT, NetworkError
from timesheet_cli.util.session import OAuthTokens


def _envelope(output: str) -> dict[str, Any]:
    lines = [line for line in output.splitlines() if line.strip()]
    return json.loads(lines[-1])


class AppTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self._temp_dir.cleanup)
        self.config_dir = Path(self._temp_dir.name)
        env_patch = mock.patch.dict(
            os.environ, {"TIMESHEET_CONFIG_DIR": str(self.config_dir)}, clear=True
        )
        env_patch.start()
        self.addCleanup(env_patch.stop)
        self.runner = CliRunner()

    def _invoke(self, *args: str, exit_code: int = 0) -> dict[str, Any]:
        result = self.runner.invoke(app_mod.app, list(args))
        self.assertEqual(result.exit_code, exit_code, result.output)
        return _envelope(result.stdout)

    def test_config_show_defaults(self) -> None:
        payload = self._invoke("config", "show")

        self.assertTrue(payload["ok"])
        self.assertEqual(payload["result"]["config_dir"], str(self.config_dir))
        self.assertEqual(payload["result"]["values"]["pagination_limit"], 20)

    def test_config_set_and_reset(self) -> None:
        payload = self._invoke("config", "set", "pagination_limit", "50")
        self.assertEqual(payload["result"], {"key": "pagination_limit", "value": 50})

        payload = self._invoke("config", "reset")
        self.assertEqual(payload["result"]["values"]["pagination_limit"], 20)

    def test_config_set_invalid_is_usage_error(self) -> None:
        payload = self._invoke("config", "set", "pagination_limit", "500", exit_code=2)

        self.assertFalse(payload["ok"])
        self.assertEqual(payload["error"], "pagination_limit must be <= 100")
        self.assertNotIn("hint", payload)

    def test_auth_status_unauthenticated(self) -> None:
        payload = self._invoke("auth", "status")
        self.assertEqual(payload["result"], {"authenticated": False})

    def test_auth_token_without_credentials(self) -> None:
        payload = self._invoke("auth", "token", exit_code=3)

        self.assertFalse(payload["ok"])
        self.assertEqual(payload["error"], "Not authenticated.")
        self.assertEqual(payload["hint"], AUTH_HINT)

    def test_auth_token_with_flag(self) -> None:
        payload = self._invoke("--api-key", "ts_flag_123", "auth", "token")
        self.assertEqual(
            payload["result"],
            {"method": "api_key", "source": "flag", "token": "ts_flag_123"},
        )

    def test_apikey_set_show_status_clear(self) -> None:
        result = self.runner.invoke(app_mod.app, ["auth", "apikey", "--set", "legacy-key-0123456"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Warning: API keys usually start with 'ts_'", result.output)
        self.assertEqual(
            _envelope(result.stdout)["result"],
            {"stored": True, "api_key": "legacy-key..."},
        )

        payload = self._invoke("auth", "apikey")
        self.assertEqual(payload["result"], {"env": None, "stored": "legacy-key..."})

        payload = self._invoke("auth", "status")
        self.assertEqual(payload["result"]["method"], "api_key")
        self.assertEqual(payload["result"]["source"], "stored")

        payload = self._invoke("auth", "apikey", "--clear")
        self.assertEqual(payload["result"], {"cleared": True})
        payload = self._invoke("auth", "apikey")
        self.assertIsNone(payload["result"]["stored"])

    def test_auth_status_prefers_oauth_over_stored_key(self) -> None:
        ctx = app_mod.auth_mod.default_context()
        ctx.session.store_api_key("ts_stored_key")
        ctx.session.store_tokens(
            OAuthTokens(
                access_token="AT1",
                refresh_token="RT1",
                expires_at=iso_utc(now_utc() + timedelta(hours=1)),
            )
        )

        payload = self._invoke("auth", "status")
        self.assertEqual(payload["result"]["method"], "oauth")

        payload = self._invoke("auth", "token")
        self.assertEqual(
            payload["result"], {"method": "oauth", "source": "oauth", "token": "AT1"}
        )

    def test_apikey_set_and_clear_conflict(self) -> None:
        result = self.runner.invoke(
            app_mod.app, ["auth", "apikey", "--set", "ts_x", "--clear"]
        )
        self.assertEqual(result.exit_code, 2)

    def test_auth_login_passes_force(self) -> None:
        with mock.patch.object(
            app_mod.auth_mod, "login", return_value={"status": "complete"}
        ) as login:
            payload = self._invoke("auth", "login", "--force")

        self.assertEqual(payload["result"], {"status": "complete"})
        self.assertTrue(login.call_args.kwargs["force"])

    def test_auth_login_network_error_has_no_hint(self) -> None:
        with mock.patch.object(
            app_mod.auth_mod,
            "login",
            side_effect=NetworkError("Failed to discover OAuth server: HTTP 503"),
        ):
            payload = self._invoke("auth", "login", exit_code=6)

        self.assertEqual(payload["error"], "Failed to discover OAuth server: HTTP 503")
        self.assertNotIn("hint", payload)

    def test_auth_logout_without_session(self) -> None:
        payload = self._invoke("auth", "logout", "--forget-client")
        self.assertEqual(
            payload["result"],
            {"status": "logged_out", "revoked": False, "forgot_client": True},
        )

    def test_invalid_log_domain(self) -> None:
        result = self.runner.invoke(app_mod.app, ["--log", "db", "config", "show"])
        self.assertEqual(result.exit_code, 2)


class NormalizeArgvTest(unittest.TestCase):
    def test_hoists_global_options(self) -> None:
        self.assertEqual(
            app_mod.normalize_cli_argv(
                ["auth", "status", "--api-key", "ts_x", "--log=auth:debug", "--log-stderr"]
            ),
            ["--api-key", "ts_x", "--log=auth:debug", "--log-stderr", "auth", "status"],
        )

    def test_keeps_option_values_in_place(self) -> None:
        argv = ["auth", "apikey", "--set", "--log"]
        self.assertEqual(app_mod.normalize_cli_argv(argv), argv)

    def test_stops_at_double_dash(self) -> None:
        argv = ["config", "set", "--", "api_url", "--log"]
        self.assertEqual(app_mod.normalize_cli_argv(argv), argv)


if __name__ == "__main__":
    unittest.main()
