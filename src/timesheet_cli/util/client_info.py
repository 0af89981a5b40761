from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, cast

from dataclasses_json import Undefined, dataclass_json

from .common import as_optional_str
from .json_file import JsonObjectFile
from .secret_store import SECRET_FILE_MODE

LOGGER = logging.getLogger("timesheet.auth")


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class OAuthClientCredentials:
    client_id: str
    registered_at: str
    client_name: str
    client_secret: str | None = None

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> OAuthClientCredentials:
        normalized_doc = dict(doc)
        if "client_id" not in normalized_doc and "id" in normalized_doc:
            normalized_doc["client_id"] = normalized_doc["id"]
        if "client_secret" not in normalized_doc and "secret" in normalized_doc:
            normalized_doc["client_secret"] = normalized_doc["secret"]
        if not as_optional_str(normalized_doc.get("client_id")):
            raise ValueError("client credentials missing client_id")
        normalized_doc.setdefault("registered_at", "")
        normalized_doc.setdefault("client_name", "")
        credentials = cast(
            OAuthClientCredentials, cast(Any, cls).from_dict(normalized_doc)
        )
        credentials.validate()
        return credentials

    def to_doc(self) -> dict[str, Any]:
        doc = cast(dict[str, Any], cast(Any, self).to_dict())
        if doc.get("client_secret") is None:
            doc.pop("client_secret", None)
        return doc

    def validate(self) -> None:
        if not as_optional_str(self.client_id):
            raise ValueError("client credentials missing client_id")
        if self.client_secret is not None and not isinstance(self.client_secret, str):
            raise ValueError("client credentials client_secret must be a string")


class ClientCredentialStore:
    """Registered OAuth client, replaced wholesale on re-registration."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._file = JsonObjectFile(self.path, label="client file", mode=SECRET_FILE_MODE)

    def load(self) -> OAuthClientCredentials | None:
        client = self._file.read().get("client")
        if not isinstance(client, dict):
            return None
        return OAuthClientCredentials.from_doc(client)

    def save(self, credentials: OAuthClientCredentials) -> None:
        credentials.validate()
        self._file.write({"client": credentials.to_doc()})
        LOGGER.info("auth.client saved client_id=%s", credentials.client_id)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
        LOGGER.info("auth.client cleared")
