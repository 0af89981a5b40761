from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import json5

from .common import normalize_url
from .env_file import read_env_file
from .errors import UsageError
from .json_file import JsonObjectFile

LOGGER = logging.getLogger("timesheet.app")

ENV_PREFIX = "TIMESHEET_"
CONFIG_DIR_ENV = "TIMESHEET_CONFIG_DIR"
API_KEY_ENV = "TIMESHEET_API_KEY"
DEFAULT_CONFIG_DIRNAME = ".timesheet-cli"

CONFIG_FILENAME = "config.json"
CLIENT_FILENAME = "client.json"
CREDENTIALS_FILENAME = "credentials.json"
DOTENV_FILENAME = ".env"


@dataclass(frozen=True, slots=True)
class ConfigKey:
    kind: type
    default: Any
    minimum: int | None = None
    maximum: int | None = None


CONFIG_SCHEMA: dict[str, ConfigKey] = {
    "api_url": ConfigKey(str, "https://api.timesheet.io"),
    "reports_url": ConfigKey(str, "https://reports.timesheet.io"),
    "pagination_limit": ConfigKey(int, 20, minimum=1, maximum=100),
    "confirm_deletes": ConfigKey(bool, True),
}

_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off"}


def get_config_dir(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    override = env.get(CONFIG_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / DEFAULT_CONFIG_DIRNAME


def config_file() -> Path:
    return get_config_dir() / CONFIG_FILENAME


def client_file() -> Path:
    return get_config_dir() / CLIENT_FILENAME


def credentials_file() -> Path:
    return get_config_dir() / CREDENTIALS_FILENAME


def parse_config_value(key: str, raw: Any) -> Any:
    spec = _require_key(key)
    if spec.kind is bool:
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        raise UsageError(f"invalid boolean value for {key}: {raw}")

    if spec.kind is int:
        if isinstance(raw, bool):
            raise UsageError(f"invalid number value for {key}: {raw}")
        try:
            value = int(str(raw).strip())
        except ValueError:
            raise UsageError(f"invalid number value for {key}: {raw}") from None
        if spec.minimum is not None and value < spec.minimum:
            raise UsageError(f"{key} must be >= {spec.minimum}")
        if spec.maximum is not None and value > spec.maximum:
            raise UsageError(f"{key} must be <= {spec.maximum}")
        return value

    text = str(raw).strip()
    if not text:
        raise UsageError(f"{key} must not be empty")
    if key.endswith("_url"):
        try:
            return normalize_url(text, field=key)
        except ValueError as exc:
            raise UsageError(str(exc)) from None
    return text


def get_config(key: str) -> Any:
    spec = _require_key(key)
    override = _env_overrides().get(_env_name(key))
    if override is not None:
        return parse_config_value(key, override)
    stored = _read_config_doc().get(key)
    if stored is None:
        return spec.default
    return parse_config_value(key, stored)


def get_all_config() -> dict[str, Any]:
    return {key: get_config(key) for key in CONFIG_SCHEMA}


def set_config(key: str, value: Any) -> Any:
    parsed = parse_config_value(key, value)
    doc = _read_config_doc()
    doc[key] = parsed
    _write_config_doc(doc)
    LOGGER.info("config.set key=%s", key)
    return parsed


def reset_config() -> dict[str, Any]:
    defaults = {key: spec.default for key, spec in CONFIG_SCHEMA.items()}
    _write_config_doc(defaults)
    LOGGER.info("config.reset")
    return defaults


def get_api_key_from_env() -> str | None:
    value = _env_overrides().get(API_KEY_ENV, "").strip()
    return value or None


def _env_overrides() -> dict[str, str]:
    # Process environment wins over the config-dir .env file.
    merged = {
        key: value
        for key, value in read_env_file(get_config_dir() / DOTENV_FILENAME).items()
        if key.startswith(ENV_PREFIX)
    }
    merged.update(
        {key: value for key, value in os.environ.items() if key.startswith(ENV_PREFIX)}
    )
    return merged


def _env_name(key: str) -> str:
    return f"{ENV_PREFIX}{key.upper()}"


def _require_key(key: str) -> ConfigKey:
    spec = CONFIG_SCHEMA.get(key)
    if spec is None:
        allowed = ", ".join(CONFIG_SCHEMA)
        raise UsageError(f"invalid configuration key: {key} (valid keys: {allowed})")
    return spec


def _read_config_doc() -> dict[str, Any]:
    path = config_file()
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise ValueError(f"unable to read config file {path}: {exc}") from None

    if not raw.strip():
        return {}
    try:
        doc = json5.loads(raw)
    except Exception as exc:
        raise ValueError(f"invalid config file JSON/JSON5 {path}: {exc}") from None
    if not isinstance(doc, dict):
        raise ValueError(f"invalid config file {path}: expected object")
    return doc


def _write_config_doc(doc: dict[str, Any]) -> None:
    JsonObjectFile(config_file(), label="config file").write(doc)
