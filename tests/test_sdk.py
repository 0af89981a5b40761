from __future__ import annotations

import os
import tempfile
import unittest
from datetime import timedelta
from pathlib import Path
from unittest import mock

from timesheet_cli import auth as auth_mod
from timesheet_cli import sdk as sdk_mod
from timesheet_cli.util import session as session_mod
from timesheet_cli.util.client_info import ClientCredentialStore
from timesheet_cli.util.common import iso_utc, now_utc
from timesheet_cli.util.errors import AUTH_HINT, AuthError
from timesheet_cli.util.secret_store import FileSecretStore
from timesheet_cli.util.session import OAuthTokens, SessionStore

API_URL = "https://api.example.test"


class ClientSessionTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self._temp_dir.cleanup)
        temp = Path(self._temp_dir.name)
        env_patch = mock.patch.dict(
            os.environ, {"TIMESHEET_CONFIG_DIR": str(temp)}, clear=True
        )
        env_patch.start()
        self.addCleanup(env_patch.stop)
        self.ctx = auth_mod.AuthContext(
            api_url=API_URL,
            session=SessionStore(FileSecretStore(temp / "credentials.json")),
            clients=ClientCredentialStore(temp / "client.json"),
        )

    def _store_oauth(self, *, refresh_token: str | None = "RT1", hours: float = 1) -> None:
        self.ctx.session.store_tokens(
            OAuthTokens(
                access_token="AT1",
                refresh_token=refresh_token,
                expires_at=iso_utc(now_utc() + timedelta(hours=hours)),
            )
        )

    def test_explicit_key_wins(self) -> None:
        self._store_oauth()
        self.ctx.session.store_api_key("ts_stored")
        with mock.patch.dict(os.environ, {"TIMESHEET_API_KEY": "ts_env"}):
            client = sdk_mod.ClientSession(self.ctx, api_key="ts_flag").get_client()

        self.assertEqual(client.credential.source, "flag")
        self.assertEqual(client.auth_headers(), {"Authorization": "ApiKey ts_flag"})

    def test_env_key_beats_stored_and_oauth(self) -> None:
        self._store_oauth()
        self.ctx.session.store_api_key("ts_stored")
        with mock.patch.dict(os.environ, {"TIMESHEET_API_KEY": "ts_env"}):
            client = sdk_mod.ClientSession(self.ctx).get_client()

        self.assertEqual(client.credential.source, "env")
        self.assertEqual(client.credential.token, "ts_env")

    def test_oauth_beats_stored_key(self) -> None:
        self._store_oauth()
        self.ctx.session.store_api_key("ts_stored")

        client = sdk_mod.ClientSession(self.ctx).get_client()

        self.assertEqual(client.credential.source, "oauth")
        self.assertEqual(client.auth_headers(), {"Authorization": "Bearer AT1"})

    def test_stored_key_used_without_oauth_session(self) -> None:
        self.ctx.session.store_api_key("ts_stored")

        client = sdk_mod.ClientSession(self.ctx).get_client()

        self.assertEqual(client.credential.source, "stored")
        self.assertEqual(client.method, sdk_mod.METHOD_API_KEY)

    def test_oauth_client_uses_bearer(self) -> None:
        self._store_oauth()

        client = sdk_mod.ClientSession(self.ctx).get_client()

        self.assertEqual(client.method, sdk_mod.METHOD_OAUTH)
        self.assertEqual(client.auth_headers(), {"Authorization": "Bearer AT1"})

    def test_no_credentials(self) -> None:
        with self.assertRaisesRegex(AuthError, "Not authenticated") as ctx:
            sdk_mod.ClientSession(self.ctx).get_client()
        self.assertEqual(ctx.exception.hint, AUTH_HINT)

    def test_expired_oauth_without_refresh_token(self) -> None:
        self._store_oauth(refresh_token=None, hours=-1)

        with self.assertRaisesRegex(AuthError, "Access token expired"):
            sdk_mod.ClientSession(self.ctx).get_client()

    def test_client_is_cached_until_token_expires(self) -> None:
        self._store_oauth()
        session = sdk_mod.ClientSession(self.ctx)

        first = session.get_client()
        self.assertIs(session.get_client(), first)

        def refresh(ctx: auth_mod.AuthContext) -> OAuthTokens:
            tokens = OAuthTokens(
                access_token="AT2",
                refresh_token="RT1",
                expires_at=iso_utc(now_utc() + timedelta(hours=3)),
            )
            ctx.session.store_tokens(tokens)
            return tokens

        later = now_utc() + timedelta(minutes=58)
        with (
            mock.patch.object(session_mod, "_now", return_value=later),
            mock.patch.object(
                auth_mod, "refresh_access_token", side_effect=refresh
            ) as refresh_mock,
        ):
            second = session.get_client()

        refresh_mock.assert_called_once()
        self.assertIsNot(second, first)
        self.assertEqual(second.credential.token, "AT2")

    def test_api_key_client_is_cached_until_invalidated(self) -> None:
        session = sdk_mod.ClientSession(self.ctx, api_key="ts_flag")
        first = session.get_client()
        self.assertIs(session.get_client(), first)

        session.invalidate()

        self.assertIsNot(session.get_client(), first)

    def test_custom_provider_order(self) -> None:
        self._store_oauth()
        self.ctx.session.store_api_key("ts_stored")
        session = sdk_mod.ClientSession(
            self.ctx,
            providers=[
                sdk_mod.StoredApiKeyProvider(self.ctx),
                sdk_mod.OAuthTokenProvider(self.ctx),
            ],
        )

        self.assertEqual(session.get_client().credential.source, "stored")

    def test_credential_repr_masks_token(self) -> None:
        credential = sdk_mod.Credential("api_key", "ts_0123456789abcdef", "flag")
        self.assertNotIn("abcdef", repr(credential))


class AuthenticatedClientTest(unittest.TestCase):
    def test_request_json_signs_requests(self) -> None:
        client = sdk_mod.AuthenticatedClient(
            API_URL + "/", sdk_mod.Credential("oauth", "AT1", "oauth")
        )
        with mock.patch.object(sdk_mod, "http_json", return_value={"items": []}) as http:
            result = client.request_json(
                "GET", "/v1/projects", query={"limit": 20, "cursor": None}
            )

        self.assertEqual(result, {"items": []})
        args, kwargs = http.call_args
        self.assertEqual(args, ("GET", f"{API_URL}/v1/projects?limit=20"))
        self.assertEqual(kwargs["extra_headers"], {"Authorization": "Bearer AT1"})
        self.assertIsNone(kwargs["json_body"])


if __name__ == "__main__":
    unittest.main()
