from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import sys
import threading
import webbrowser
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable
from urllib import parse as urlparse

from .util import callback_server as _callback_server
from .util import oauth_discovery as _discovery
from .util.client_info import ClientCredentialStore, OAuthClientCredentials
from .util.common import as_optional_str as _as_optional_str
from .util.common import iso_utc as _iso_utc
from .util.common import now_utc as _now_utc
from .util.config import client_file, credentials_file, get_config
from .util.errors import AuthError, HttpJsonError, NetworkError
from .util.http_client import http_json as _http_json
from .util.secret_store import FileSecretStore
from .util.session import OAuthTokens, SessionStore

LOGGER = logging.getLogger("timesheet.auth")

PKCE_METHOD = "S256"
STATE_BYTES = 32
TOKEN_TIMEOUT_S = 10.0
REVOKE_TIMEOUT_S = 5.0
RELOGIN_HINT = 'Please run "timesheet auth login" again.'

BrowserOpener = Callable[[str], bool]


@dataclass(frozen=True, slots=True)
class AuthContext:
    api_url: str
    session: SessionStore
    clients: ClientCredentialStore


@dataclass(frozen=True, slots=True)
class PkcePair:
    code_verifier: str
    code_challenge: str
    code_challenge_method: str = PKCE_METHOD

    def __repr__(self) -> str:
        return f"PkcePair(code_challenge={self.code_challenge!r}, code_challenge_method={self.code_challenge_method!r})"


def default_context() -> AuthContext:
    return AuthContext(
        api_url=str(get_config("api_url")).rstrip("/"),
        session=SessionStore(FileSecretStore(credentials_file())),
        clients=ClientCredentialStore(client_file()),
    )


def generate_state() -> str:
    return secrets.token_urlsafe(STATE_BYTES)


def generate_pkce() -> PkcePair:
    verifier = _b64url(secrets.token_bytes(32))
    challenge = _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
    return PkcePair(code_verifier=verifier, code_challenge=challenge)


def build_authorization_url(
    *,
    authorization_endpoint: str,
    client_id: str,
    redirect_uri: str,
    state: str,
    pkce: PkcePair,
) -> str:
    params: dict[str, str] = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "code_challenge": pkce.code_challenge,
        "code_challenge_method": pkce.code_challenge_method,
        "state": state,
    }
    sep = "&" if "?" in authorization_endpoint else "?"
    return f"{authorization_endpoint}{sep}{urlparse.urlencode(params)}"


def login(
    ctx: AuthContext,
    *,
    force: bool = False,
    open_browser: BrowserOpener = webbrowser.open,
    callback_timeout_s: float = _callback_server.CALLBACK_TIMEOUT_S,
) -> dict[str, Any]:
    """Run the browser-based authorization code + PKCE flow.

    Nothing is written to the session store unless every step succeeds.
    """
    if not force and is_authenticated(ctx):
        LOGGER.info("auth.login already authenticated; skipping")
        return {"status": "already_authenticated"}

    LOGGER.info("auth.login api_url=%s", ctx.api_url)
    metadata = _discovery.discover(ctx.api_url)

    state = generate_state()
    listener = _callback_server.listen(state, timeout_s=callback_timeout_s)
    try:
        redirect_uri = listener.redirect_uri
        client = _resolve_client(ctx, metadata=metadata, redirect_uri=redirect_uri)
        pkce = generate_pkce()
        auth_url = build_authorization_url(
            authorization_endpoint=metadata.authorization_endpoint,
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            state=state,
            pkce=pkce,
        )

        _launch_browser(auth_url, open_browser)
        callback = listener.await_result()

        tokens = _exchange_authorization_code(
            token_endpoint=metadata.token_endpoint,
            code=callback.code,
            client=client,
            redirect_uri=redirect_uri,
            code_verifier=pkce.code_verifier,
        )
    finally:
        listener.close()

    ctx.session.store_tokens(tokens)
    LOGGER.info("auth.login complete client_id=%s", client.client_id)
    return {
        "status": "complete",
        "client_id": client.client_id,
        "expires_at": tokens.expires_at,
    }


def refresh_access_token(ctx: AuthContext) -> OAuthTokens:
    tokens = ctx.session.get_tokens()
    if tokens is None or not tokens.refresh_token:
        raise AuthError(f"No refresh token available. {RELOGIN_HINT}")

    client = ctx.clients.load()
    if client is None:
        raise AuthError(f"No OAuth client configured. {RELOGIN_HINT}")

    metadata = _discovery.discover(ctx.api_url)
    form = {
        "grant_type": "refresh_token",
        "refresh_token": tokens.refresh_token,
        "client_id": client.client_id,
    }
    if client.client_secret:
        form["client_secret"] = client.client_secret

    LOGGER.info("auth.refresh client_id=%s", client.client_id)
    try:
        resp = _http_json(
            "POST",
            metadata.token_endpoint,
            form=form,
            timeout_s=TOKEN_TIMEOUT_S,
        )
    except HttpJsonError as exc:
        rotated = _rotated_elsewhere(ctx, used_refresh_token=tokens.refresh_token)
        if rotated is not None:
            return rotated
        raise AuthError(
            f"Failed to refresh token: {exc.oauth_message()}. {RELOGIN_HINT}"
        ) from None
    except NetworkError as exc:
        raise AuthError(f"Failed to refresh token: {exc}. {RELOGIN_HINT}") from None

    fresh = _tokens_from_response(resp, context="token refresh")
    merged = OAuthTokens(
        access_token=fresh.access_token,
        refresh_token=fresh.refresh_token or tokens.refresh_token,
        token_type=fresh.token_type,
        expires_at=fresh.expires_at,
        scope=fresh.scope or tokens.scope,
    )
    ctx.session.store_tokens(merged)
    return merged


def get_valid_access_token(ctx: AuthContext) -> str:
    tokens = ctx.session.get_tokens()
    if tokens is None:
        raise AuthError('Not authenticated. Please run "timesheet auth login".')

    if ctx.session.is_token_expired():
        if tokens.refresh_token:
            return refresh_access_token(ctx).access_token
        raise AuthError(f"Access token expired. {RELOGIN_HINT}")

    return tokens.access_token


def logout(ctx: AuthContext, *, forget_client: bool = False) -> dict[str, Any]:
    try:
        tokens = ctx.session.get_tokens()
    except ValueError as exc:
        LOGGER.info("auth.logout unreadable session; nothing to revoke err=%s", exc)
        tokens = None
    revoked = False
    if tokens is not None:
        revoked = _revoke_best_effort(ctx, tokens)

    ctx.session.clear_tokens()
    if forget_client:
        ctx.clients.clear()
    return {"status": "logged_out", "revoked": revoked, "forgot_client": forget_client}


def is_authenticated(ctx: AuthContext) -> bool:
    try:
        return ctx.session.get_tokens() is not None
    except ValueError as exc:
        LOGGER.info("auth.session unreadable; treating as logged out err=%s", exc)
        return False


def get_auth_status(ctx: AuthContext) -> dict[str, Any]:
    tokens = ctx.session.get_tokens()
    if tokens is None:
        return {"authenticated": False}

    client = ctx.clients.load()
    status: dict[str, Any] = {"authenticated": True, "method": "oauth"}
    if tokens.expires_at:
        status["expires_at"] = tokens.expires_at
    if client is not None:
        status["client_id"] = client.client_id
    return status


def _resolve_client(
    ctx: AuthContext,
    *,
    metadata: _discovery.OAuthServerMetadata,
    redirect_uri: str,
) -> OAuthClientCredentials:
    client = ctx.clients.load()
    if client is not None:
        LOGGER.info("auth.client reusing client_id=%s", client.client_id)
        return client
    client = _discovery.register_client(redirect_uri, metadata=metadata)
    ctx.clients.save(client)
    return client


def _launch_browser(url: str, open_browser: BrowserOpener) -> None:
    # Human-only guidance on stderr; stdout remains JSON result.
    print(f"Open: {url}", file=sys.stderr)

    def _run() -> None:
        try:
            opened = open_browser(url)
        except Exception as exc:
            LOGGER.info("auth.browser launch failed err=%s", exc)
            opened = False
        if not opened:
            print(
                "Could not open a browser automatically; open the URL above to continue.",
                file=sys.stderr,
            )

    threading.Thread(target=_run, name="browser-launch", daemon=True).start()


def _exchange_authorization_code(
    *,
    token_endpoint: str,
    code: str,
    client: OAuthClientCredentials,
    redirect_uri: str,
    code_verifier: str,
) -> OAuthTokens:
    form: dict[str, str] = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": client.client_id,
        "code_verifier": code_verifier,
    }
    if client.client_secret:
        form["client_secret"] = client.client_secret
    try:
        resp = _http_json("POST", token_endpoint, form=form, timeout_s=TOKEN_TIMEOUT_S)
    except HttpJsonError as exc:
        raise AuthError(
            f"Failed to exchange authorization code: {exc.oauth_message()}"
        ) from None
    return _tokens_from_response(resp, context="token exchange")


def _tokens_from_response(resp: Any, *, context: str) -> OAuthTokens:
    if not isinstance(resp, dict):
        raise AuthError(f"invalid {context} response")
    access_token = _as_optional_str(resp.get("access_token"))
    if not access_token:
        raise AuthError(f"{context} response missing access_token")

    expires_at: str | None = None
    expires_in = _as_seconds(resp.get("expires_in"))
    if expires_in is not None:
        expires_at = _iso_utc(_now_utc() + timedelta(seconds=expires_in))

    return OAuthTokens(
        access_token=access_token,
        refresh_token=_as_optional_str(resp.get("refresh_token")),
        token_type=_as_optional_str(resp.get("token_type")) or "Bearer",
        expires_at=expires_at,
        scope=_as_optional_str(resp.get("scope")),
    )


def _rotated_elsewhere(
    ctx: AuthContext, *, used_refresh_token: str
) -> OAuthTokens | None:
    # Another process may have redeemed the same refresh token first.
    current = ctx.session.get_tokens()
    if current is None or current.refresh_token == used_refresh_token:
        return None
    if ctx.session.is_token_expired():
        return None
    LOGGER.info("auth.refresh rejected but store holds newer tokens; using them")
    return current


def _revoke_best_effort(ctx: AuthContext, tokens: OAuthTokens) -> bool:
    try:
        client = ctx.clients.load()
        if client is None:
            return False
        metadata = _discovery.discover(ctx.api_url)
        if not metadata.revocation_endpoint:
            return False
        _http_json(
            "POST",
            metadata.revocation_endpoint,
            form={"token": tokens.access_token, "client_id": client.client_id},
            timeout_s=REVOKE_TIMEOUT_S,
        )
    except (HttpJsonError, ValueError) as exc:
        LOGGER.info("auth.logout revocation failed err=%s", exc)
        return False
    LOGGER.info("auth.logout token revoked")
    return True


def _as_seconds(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError:
            return None
        return parsed if parsed > 0 else None
    return None


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")
