from __future__ import annotations

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator


class InvalidJsonFileError(ValueError):
    """The file exists but does not hold a JSON object."""


class JsonObjectFile:
    """A JSON object document rewritten atomically under a sibling lock file.

    A missing or blank file reads as ``{}``. Writers never block: a held lock
    is reported as a "busy" ``ValueError``.
    """

    def __init__(self, path: str | Path, *, label: str, mode: int | None = None) -> None:
        self.path = Path(path)
        self.label = label
        self.mode = mode

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(f"{self.path.name}.lock")

    def read(self) -> dict[str, Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise ValueError(f"unable to read {self.label} {self.path}: {exc}") from None
        if not raw.strip():
            return {}
        try:
            doc = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise InvalidJsonFileError(f"invalid {self.label} {self.path}: {exc.msg}") from None
        if not isinstance(doc, dict):
            raise InvalidJsonFileError(f"invalid {self.label} {self.path}: expected object")
        return doc

    def write(self, payload: dict[str, Any]) -> None:
        with self._locked():
            self._replace(payload)

    @contextmanager
    def editing(self, *, discard_invalid: bool = False) -> Iterator[dict[str, Any]]:
        """Read-modify-write under one lock; the yielded dict is saved on exit.

        With ``discard_invalid`` an unparseable document is edited as ``{}``.
        """
        with self._locked():
            try:
                doc = self.read()
            except InvalidJsonFileError:
                if not discard_invalid:
                    raise
                doc = {}
            yield doc
            self._replace(doc)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                raise ValueError(f"{self.label} is busy: {self.path}") from None
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _replace(self, payload: dict[str, Any]) -> None:
        text = json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True) + "\n"
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self.path.parent,
            prefix=f".{self.path.name}.",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            try:
                if self.mode is not None:
                    os.fchmod(tmp.fileno(), self.mode)
                tmp.write(text)
                tmp.flush()
                os.fsync(tmp.fileno())
            except BaseException:
                tmp.close()
                os.unlink(tmp.name)
                raise
        try:
            os.replace(tmp.name, self.path)
        except OSError:
            os.unlink(tmp.name)
            raise
