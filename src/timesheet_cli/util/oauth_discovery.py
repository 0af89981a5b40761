from __future__ import annotations

import logging
import socket
from dataclasses import dataclass, field
from typing import Any, cast

from dataclasses_json import Undefined, dataclass_json

from .client_info import OAuthClientCredentials
from .common import as_optional_str, iso_utc, now_utc
from .errors import AuthError, HttpJsonError, NetworkError
from .http_client import http_json

LOGGER = logging.getLogger("timesheet.auth")

DISCOVERY_PATH = "/.well-known/oauth-authorization-server"
DISCOVERY_TIMEOUT_S = 10.0
PRODUCT_NAME = "Timesheet CLI"


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class OAuthServerMetadata:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str | None = None
    revocation_endpoint: str | None = None
    introspection_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    jwks_uri: str | None = None
    scopes_supported: list[str] = field(default_factory=list)
    response_types_supported: list[str] = field(default_factory=list)
    grant_types_supported: list[str] = field(default_factory=list)
    token_endpoint_auth_methods_supported: list[str] = field(default_factory=list)
    code_challenge_methods_supported: list[str] = field(default_factory=list)

    @classmethod
    def from_doc(cls, doc: dict[str, Any], *, default_issuer: str) -> OAuthServerMetadata:
        normalized_doc = dict(doc)
        for key in ("authorization_endpoint", "token_endpoint"):
            if not as_optional_str(normalized_doc.get(key)):
                raise NetworkError(f"OAuth discovery document missing {key}")
        if not as_optional_str(normalized_doc.get("issuer")):
            normalized_doc["issuer"] = default_issuer
        for key, value in list(normalized_doc.items()):
            if key.endswith("_supported") and not isinstance(value, list):
                normalized_doc.pop(key)
        return cast(OAuthServerMetadata, cast(Any, cls).from_dict(normalized_doc))

    def to_doc(self) -> dict[str, Any]:
        return cast(dict[str, Any], cast(Any, self).to_dict())


def discovery_url(api_url: str) -> str:
    return f"{api_url.rstrip('/')}{DISCOVERY_PATH}"


def fallback_metadata(api_url: str) -> OAuthServerMetadata:
    base = api_url.rstrip("/")
    return OAuthServerMetadata(
        issuer=base,
        authorization_endpoint=f"{base}/oauth2/auth",
        token_endpoint=f"{base}/oauth2/token",
        registration_endpoint=f"{base}/oauth2/register",
        revocation_endpoint=f"{base}/oauth2/revoke",
        introspection_endpoint=f"{base}/oauth2/introspect",
        userinfo_endpoint=f"{base}/oauth2/userinfo",
        jwks_uri=f"{base}/oauth2/jwks",
        scopes_supported=["openid", "profile"],
        response_types_supported=["code"],
        grant_types_supported=["authorization_code", "refresh_token"],
        token_endpoint_auth_methods_supported=["none", "client_secret_post"],
        code_challenge_methods_supported=["S256"],
    )


def discover(api_url: str) -> OAuthServerMetadata:
    """Resolve authorization server metadata for ``api_url``.

    Only a 404 from the well-known document falls back to the conventional
    ``/oauth2/*`` endpoints; every other failure is a network error.
    """
    url = discovery_url(api_url)
    try:
        doc = http_json("GET", url, timeout_s=DISCOVERY_TIMEOUT_S)
    except HttpJsonError as exc:
        if exc.status == 404:
            LOGGER.info("auth.discovery not found url=%s; using default endpoints", url)
            return fallback_metadata(api_url)
        raise NetworkError(
            f"Failed to discover OAuth server: HTTP {exc.status} from {url}"
        ) from None
    except NetworkError as exc:
        raise NetworkError(f"Failed to discover OAuth server: {exc}") from None

    if not isinstance(doc, dict):
        raise NetworkError(f"Failed to discover OAuth server: invalid document at {url}")
    metadata = OAuthServerMetadata.from_doc(doc, default_issuer=api_url.rstrip("/"))
    LOGGER.info("auth.discovery issuer=%s", metadata.issuer)
    return metadata


def default_client_name() -> str:
    return f"{PRODUCT_NAME} ({socket.gethostname()})"


def register_client(
    redirect_uri: str,
    *,
    metadata: OAuthServerMetadata | None = None,
    api_url: str | None = None,
    client_name: str | None = None,
) -> OAuthClientCredentials:
    """Register a public PKCE client (RFC 7591) for ``redirect_uri``."""
    if metadata is None:
        if api_url is None:
            raise ValueError("internal error: register_client needs metadata or api_url")
        metadata = discover(api_url)

    registration_endpoint = as_optional_str(metadata.registration_endpoint)
    if not registration_endpoint:
        raise AuthError("OAuth server does not support dynamic client registration")

    name = client_name or default_client_name()
    payload: dict[str, Any] = {
        "redirect_uris": [redirect_uri],
        "grant_types": ["authorization_code", "refresh_token"],
        "token_endpoint_auth_method": "none",
        "client_name": name,
    }
    try:
        resp = http_json(
            "POST",
            registration_endpoint,
            json_body=payload,
            timeout_s=DISCOVERY_TIMEOUT_S,
        )
    except HttpJsonError as exc:
        raise AuthError(
            f"Failed to register OAuth client: {exc.oauth_message()}"
        ) from None

    if not isinstance(resp, dict):
        raise AuthError("Failed to register OAuth client: invalid response")
    client_id = as_optional_str(resp.get("client_id"))
    if not client_id:
        raise AuthError("Failed to register OAuth client: response missing client_id")

    LOGGER.info("auth.registration client_id=%s", client_id)
    return OAuthClientCredentials(
        client_id=client_id,
        client_secret=as_optional_str(resp.get("client_secret")),
        registered_at=iso_utc(now_utc()),
        client_name=name,
    )
