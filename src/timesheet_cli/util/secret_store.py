from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Protocol

from .json_file import JsonObjectFile

LOGGER = logging.getLogger("timesheet.auth")

SECRET_FILE_MODE = 0o600


class SecretStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, secret: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def update(self, values: Mapping[str, str | None]) -> None: ...


class FileSecretStore:
    """Owner-only JSON file of named secrets.

    Every mutation is one locked read-modify-write, so a multi-key ``update``
    is observed by readers as a single change.
    """

    def __init__(self, path: str | Path) -> None:
        self._file = JsonObjectFile(path, label="credential store", mode=SECRET_FILE_MODE)

    @property
    def path(self) -> Path:
        return self._file.path

    def get(self, key: str) -> str | None:
        value = self._file.read().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, secret: str) -> None:
        self.update({key: secret})

    def delete(self, key: str) -> None:
        self.update({key: None})

    def update(self, values: Mapping[str, str | None]) -> None:
        # Pure deletions still succeed on a corrupt file, so logout can recover.
        deleting_only = all(value is None for value in values.values())
        with self._file.editing(discard_invalid=deleting_only) as doc:
            for key, value in values.items():
                if value is None:
                    doc.pop(key, None)
                else:
                    doc[key] = value
        LOGGER.debug("secret_store.update keys=%s", ",".join(sorted(values)))
