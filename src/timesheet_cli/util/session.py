from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, cast

from dataclasses_json import Undefined, dataclass_json

from .common import as_optional_str, now_utc, parse_iso_utc
from .secret_store import SecretStore

LOGGER = logging.getLogger("timesheet.auth")

ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"
TOKEN_METADATA_KEY = "token_metadata"
API_KEY_KEY = "api_key"

DEFAULT_EXPIRY_BUFFER_MINUTES = 5


@dataclass(frozen=True, slots=True)
class OAuthTokens:
    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_at: str | None = None
    scope: str | None = None


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class TokenMetadata:
    token_type: str = "Bearer"
    expires_at: str | None = None
    scope: str | None = None

    @classmethod
    def parse(cls, raw: str) -> TokenMetadata:
        doc = json.loads(raw)
        if not isinstance(doc, dict):
            raise ValueError("token metadata must be an object")
        metadata = cast(TokenMetadata, cast(Any, cls).from_dict(doc))
        if metadata.expires_at is not None and not isinstance(metadata.expires_at, str):
            raise ValueError("token metadata expires_at must be a string")
        return metadata

    def dumps(self) -> str:
        return json.dumps(cast(Any, self).to_dict(), separators=(",", ":"), sort_keys=True)


def _now() -> datetime:
    return now_utc()


class SessionStore:
    """OAuth tokens and the stored API key for the single account slot."""

    def __init__(self, secrets: SecretStore) -> None:
        self._secrets = secrets

    def store_tokens(self, tokens: OAuthTokens) -> None:
        metadata = TokenMetadata(
            token_type=tokens.token_type or "Bearer",
            expires_at=tokens.expires_at,
            scope=tokens.scope,
        )
        self._secrets.update(
            {
                ACCESS_TOKEN_KEY: tokens.access_token,
                REFRESH_TOKEN_KEY: tokens.refresh_token,
                TOKEN_METADATA_KEY: metadata.dumps(),
            }
        )
        LOGGER.info(
            "session.tokens stored refresh=%s expires_at=%s",
            bool(tokens.refresh_token),
            tokens.expires_at,
        )

    def get_tokens(self) -> OAuthTokens | None:
        access_token = as_optional_str(self._secrets.get(ACCESS_TOKEN_KEY))
        if not access_token:
            return None

        metadata = self._read_metadata() or TokenMetadata()
        return OAuthTokens(
            access_token=access_token,
            refresh_token=as_optional_str(self._secrets.get(REFRESH_TOKEN_KEY)),
            token_type=metadata.token_type or "Bearer",
            expires_at=metadata.expires_at,
            scope=metadata.scope,
        )

    def clear_tokens(self) -> None:
        self._secrets.update(
            {
                ACCESS_TOKEN_KEY: None,
                REFRESH_TOKEN_KEY: None,
                TOKEN_METADATA_KEY: None,
            }
        )
        LOGGER.info("session.tokens cleared")

    def has_tokens(self) -> bool:
        return as_optional_str(self._secrets.get(ACCESS_TOKEN_KEY)) is not None

    def is_token_expired(
        self, buffer_minutes: float = DEFAULT_EXPIRY_BUFFER_MINUTES
    ) -> bool:
        try:
            if not self.has_tokens():
                return True
            metadata = self._read_metadata()
        except ValueError as exc:
            LOGGER.info("session.tokens unreadable store; treating as expired err=%s", exc)
            return True
        if metadata is None:
            return True
        if metadata.expires_at is None:
            return False
        try:
            expires_at = parse_iso_utc(metadata.expires_at)
        except ValueError:
            LOGGER.info("session.tokens unparseable expires_at; treating as expired")
            return True
        return _now() + timedelta(minutes=buffer_minutes) >= expires_at

    def store_api_key(self, api_key: str) -> None:
        self._secrets.set(API_KEY_KEY, api_key)
        LOGGER.info("session.api_key stored")

    def get_stored_api_key(self) -> str | None:
        return as_optional_str(self._secrets.get(API_KEY_KEY))

    def clear_api_key(self) -> None:
        self._secrets.delete(API_KEY_KEY)
        LOGGER.info("session.api_key cleared")

    def _read_metadata(self) -> TokenMetadata | None:
        raw = self._secrets.get(TOKEN_METADATA_KEY)
        if raw is None:
            return None
        try:
            return TokenMetadata.parse(raw)
        except (ValueError, TypeError, KeyError) as exc:
            LOGGER.info("session.tokens invalid metadata err=%s", exc)
            return None
