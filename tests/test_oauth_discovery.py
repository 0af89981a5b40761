from __future__ import annotations

import unittest
from unittest import mock

from timesheet_cli.util import oauth_discovery as discovery_mod
from timesheet_cli.util.errors import AuthError, HttpJsonError, NetworkError

API_URL = "https://api.example.test"


def _http_error(status: int, payload: dict | None = None) -> HttpJsonError:
    return HttpJsonError(status=status, url="u", body_text="", payload=payload)


class DiscoverTest(unittest.TestCase):
    def test_discover_parses_document(self) -> None:
        doc = {
            "issuer": "https://auth.example.test",
            "authorization_endpoint": "https://auth.example.test/authorize",
            "token_endpoint": "https://auth.example.test/token",
            "registration_endpoint": "https://auth.example.test/register",
            "code_challenge_methods_supported": ["S256"],
            "ui_locales_supported": "en",
        }
        with mock.patch.object(discovery_mod, "http_json", return_value=doc) as http:
            meta = discovery_mod.discover(API_URL + "/")

        http.assert_called_once_with(
            "GET",
            "https://api.example.test/.well-known/oauth-authorization-server",
            timeout_s=discovery_mod.DISCOVERY_TIMEOUT_S,
        )
        self.assertEqual(meta.issuer, "https://auth.example.test")
        self.assertEqual(meta.token_endpoint, "https://auth.example.test/token")
        self.assertEqual(meta.code_challenge_methods_supported, ["S256"])
        self.assertIsNone(meta.revocation_endpoint)

    def test_discover_defaults_issuer(self) -> None:
        doc = {
            "authorization_endpoint": "https://a/authorize",
            "token_endpoint": "https://a/token",
        }
        with mock.patch.object(discovery_mod, "http_json", return_value=doc):
            meta = discovery_mod.discover(API_URL)
        self.assertEqual(meta.issuer, API_URL)

    def test_discover_404_falls_back(self) -> None:
        with mock.patch.object(discovery_mod, "http_json", side_effect=_http_error(404)):
            meta = discovery_mod.discover(API_URL)

        self.assertEqual(meta.token_endpoint, f"{API_URL}/oauth2/token")
        self.assertEqual(meta.authorization_endpoint, f"{API_URL}/oauth2/auth")
        self.assertEqual(meta.registration_endpoint, f"{API_URL}/oauth2/register")
        self.assertEqual(meta.revocation_endpoint, f"{API_URL}/oauth2/revoke")
        self.assertEqual(meta.code_challenge_methods_supported, ["S256"])
        self.assertEqual(
            meta.grant_types_supported, ["authorization_code", "refresh_token"]
        )

    def test_discover_500_is_network_error(self) -> None:
        with mock.patch.object(discovery_mod, "http_json", side_effect=_http_error(500)):
            with self.assertRaisesRegex(
                NetworkError, "Failed to discover OAuth server: HTTP 500"
            ):
                discovery_mod.discover(API_URL)

    def test_discover_transport_failure_is_network_error(self) -> None:
        with mock.patch.object(
            discovery_mod, "http_json", side_effect=NetworkError("timed out")
        ):
            with self.assertRaisesRegex(NetworkError, "timed out"):
                discovery_mod.discover(API_URL)

    def test_discover_missing_token_endpoint(self) -> None:
        with mock.patch.object(
            discovery_mod,
            "http_json",
            return_value={"authorization_endpoint": "https://a/authorize"},
        ):
            with self.assertRaisesRegex(NetworkError, "missing token_endpoint"):
                discovery_mod.discover(API_URL)


class RegisterClientTest(unittest.TestCase):
    def test_register_public_client(self) -> None:
        meta = discovery_mod.fallback_metadata(API_URL)
        with (
            mock.patch.object(
                discovery_mod, "http_json", return_value={"client_id": "abc123"}
            ) as http,
            mock.patch.object(discovery_mod.socket, "gethostname", return_value="box"),
        ):
            creds = discovery_mod.register_client(
                "http://127.0.0.1:5555/callback", metadata=meta
            )

        self.assertEqual(creds.client_id, "abc123")
        self.assertIsNone(creds.client_secret)
        self.assertEqual(creds.client_name, "Timesheet CLI (box)")
        self.assertTrue(creds.registered_at.endswith("Z"))

        args, kwargs = http.call_args
        self.assertEqual(args, ("POST", f"{API_URL}/oauth2/register"))
        self.assertEqual(
            kwargs["json_body"],
            {
                "redirect_uris": ["http://127.0.0.1:5555/callback"],
                "grant_types": ["authorization_code", "refresh_token"],
                "token_endpoint_auth_method": "none",
                "client_name": "Timesheet CLI (box)",
            },
        )

    def test_register_requires_registration_endpoint(self) -> None:
        meta = discovery_mod.OAuthServerMetadata(
            issuer=API_URL,
            authorization_endpoint=f"{API_URL}/authorize",
            token_endpoint=f"{API_URL}/token",
        )
        with mock.patch.object(discovery_mod, "http_json") as http:
            with self.assertRaisesRegex(
                AuthError, "does not support dynamic client registration"
            ):
                discovery_mod.register_client("http://127.0.0.1:1/callback", metadata=meta)
        http.assert_not_called()

    def test_register_server_rejection(self) -> None:
        meta = discovery_mod.fallback_metadata(API_URL)
        err = _http_error(400, {"error": "invalid_redirect_uri"})
        with mock.patch.object(discovery_mod, "http_json", side_effect=err):
            with self.assertRaisesRegex(
                AuthError, "Failed to register OAuth client: invalid_redirect_uri"
            ):
                discovery_mod.register_client("http://127.0.0.1:1/callback", metadata=meta)

    def test_register_missing_client_id(self) -> None:
        meta = discovery_mod.fallback_metadata(API_URL)
        with mock.patch.object(discovery_mod, "http_json", return_value={}):
            with self.assertRaisesRegex(AuthError, "response missing client_id"):
                discovery_mod.register_client("http://127.0.0.1:1/callback", metadata=meta)


if __name__ == "__main__":
    unittest.main()
