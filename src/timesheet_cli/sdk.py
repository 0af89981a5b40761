from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol
from urllib import parse as urlparse

from . import auth as auth_mod
from .util.common import mask_secret
from .util.config import get_api_key_from_env
from .util.errors import AuthError
from .util.http_client import http_json

LOGGER = logging.getLogger("timesheet.api")

METHOD_API_KEY = "api_key"
METHOD_OAUTH = "oauth"


@dataclass(frozen=True, slots=True)
class Credential:
    method: str
    token: str
    source: str

    def __repr__(self) -> str:
        return (
            f"Credential(method={self.method!r}, token={mask_secret(self.token)!r}, "
            f"source={self.source!r})"
        )


class CredentialProvider(Protocol):
    name: str

    def try_resolve(self) -> Credential | None: ...


class ExplicitApiKeyProvider:
    name = "flag"

    def __init__(self, api_key: str | None) -> None:
        self._api_key = (api_key or "").strip() or None

    def try_resolve(self) -> Credential | None:
        if self._api_key is None:
            return None
        return Credential(METHOD_API_KEY, self._api_key, self.name)


class EnvApiKeyProvider:
    name = "env"

    def try_resolve(self) -> Credential | None:
        api_key = get_api_key_from_env()
        if api_key is None:
            return None
        return Credential(METHOD_API_KEY, api_key, self.name)


class StoredApiKeyProvider:
    name = "stored"

    def __init__(self, ctx: auth_mod.AuthContext) -> None:
        self._ctx = ctx

    def try_resolve(self) -> Credential | None:
        api_key = self._ctx.session.get_stored_api_key()
        if api_key is None:
            return None
        return Credential(METHOD_API_KEY, api_key, self.name)


class OAuthTokenProvider:
    name = "oauth"

    def __init__(self, ctx: auth_mod.AuthContext) -> None:
        self._ctx = ctx

    def try_resolve(self) -> Credential | None:
        if not auth_mod.is_authenticated(self._ctx):
            return None
        # Expired without a refresh token raises rather than falling through.
        token = auth_mod.get_valid_access_token(self._ctx)
        return Credential(METHOD_OAUTH, token, self.name)


def api_key_providers(*, api_key: str | None = None) -> list[CredentialProvider]:
    return [ExplicitApiKeyProvider(api_key), EnvApiKeyProvider()]


def default_providers(
    ctx: auth_mod.AuthContext, *, api_key: str | None = None
) -> list[CredentialProvider]:
    # A saved API key is only a fallback; an OAuth login supersedes it.
    return [
        *api_key_providers(api_key=api_key),
        OAuthTokenProvider(ctx),
        StoredApiKeyProvider(ctx),
    ]


def resolve_credential(providers: list[CredentialProvider]) -> Credential:
    for provider in providers:
        credential = provider.try_resolve()
        if credential is not None:
            LOGGER.info(
                "sdk.credential method=%s source=%s",
                credential.method,
                credential.source,
            )
            return credential
    raise AuthError("Not authenticated.")


class AuthenticatedClient:
    """Signs requests to the time-tracking API with one resolved credential."""

    def __init__(self, base_url: str, credential: Credential) -> None:
        self.base_url = base_url.rstrip("/")
        self.credential = credential

    @property
    def method(self) -> str:
        return self.credential.method

    def auth_headers(self) -> dict[str, str]:
        if self.credential.method == METHOD_OAUTH:
            return {"Authorization": f"Bearer {self.credential.token}"}
        return {"Authorization": f"ApiKey {self.credential.token}"}

    def url_for(self, path: str, query: dict[str, Any] | None = None) -> str:
        url = f"{self.base_url}/{path.lstrip('/')}"
        if query:
            params = {k: str(v) for k, v in query.items() if v is not None}
            if params:
                url = f"{url}?{urlparse.urlencode(params)}"
        return url

    def request_json(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any] | None = None,
        json_body: dict[str, Any] | list[Any] | None = None,
    ) -> Any:
        return http_json(
            method,
            self.url_for(path, query),
            json_body=json_body,
            extra_headers=self.auth_headers(),
            logger=LOGGER,
        )


class ClientSession:
    """Per-invocation owner of the cached API client.

    An OAuth-mode client is rebuilt once its token falls inside the expiry
    buffer; API-key clients are kept until ``invalidate``.
    """

    def __init__(
        self,
        ctx: auth_mod.AuthContext,
        *,
        api_key: str | None = None,
        providers: list[CredentialProvider] | None = None,
    ) -> None:
        self.ctx = ctx
        self._providers = (
            providers if providers is not None else default_providers(ctx, api_key=api_key)
        )
        self._client: AuthenticatedClient | None = None

    def get_client(self) -> AuthenticatedClient:
        client = self._client
        if client is not None and not self._is_stale(client):
            return client
        if client is not None:
            LOGGER.info("sdk.client cached oauth token expired; rebuilding")
        self._client = None
        self._client = AuthenticatedClient(
            self.ctx.api_url, resolve_credential(self._providers)
        )
        return self._client

    def clear_client(self) -> None:
        self._client = None

    def invalidate(self) -> None:
        self.clear_client()

    def _is_stale(self, client: AuthenticatedClient) -> bool:
        if client.method != METHOD_OAUTH:
            return False
        return self.ctx.session.is_token_expired()
