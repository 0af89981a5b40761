from __future__ import annotations

import logging
import re
from typing import Mapping

LOG_DOMAINS = {
    "app": "timesheet.app",
    "auth": "timesheet.auth",
    "api": "timesheet.api",
}
DEFAULT_LEVEL = logging.INFO

LOG_LEVELS = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

_SECRET_PATTERNS = (
    (re.compile(r"\b(Bearer|ApiKey)\s+[^\s,;]+"), r"\1 [redacted]"),
    (re.compile(r"\bts_[A-Za-z0-9_\-]{4,}"), "ts_[redacted]"),
    (
        re.compile(r"\b(access_token|refresh_token|client_secret|code_verifier)=[^\s&]+"),
        r"\1=[redacted]",
    ),
)


class RedactSecretsFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = message
        for pattern, replacement in _SECRET_PATTERNS:
            redacted = pattern.sub(replacement, redacted)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def parse_log_level(value: str) -> int:
    level = LOG_LEVELS.get(value.strip().lower())
    if level is None:
        allowed = ", ".join(sorted(LOG_LEVELS))
        raise ValueError(f"invalid log level '{value}' (expected one of: {allowed})")
    return level


def parse_log_specs(specs: list[str]) -> dict[str, int]:
    """Parse repeated ``DOMAIN[:LEVEL]`` values; ``all`` enables every domain."""
    enabled: dict[str, int] = {}
    for spec in specs:
        domain, sep, level_name = spec.partition(":")
        level = parse_log_level(level_name) if sep else DEFAULT_LEVEL
        if domain == "all":
            for name in LOG_DOMAINS:
                enabled[name] = level
            continue
        if domain not in LOG_DOMAINS:
            allowed = ", ".join([*LOG_DOMAINS, "all"])
            raise ValueError(
                f"invalid log domain '{domain}' (expected one of: {allowed})"
            )
        enabled[domain] = level
    return enabled


def configure_logging(
    *, enabled: Mapping[str, int], log_stderr: bool, log_file: str | None
) -> None:
    # Reset only our domain loggers so repeated in-process runs don't stack handlers.
    for logger_name in LOG_DOMAINS.values():
        logger = logging.getLogger(logger_name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            if isinstance(handler, logging.FileHandler):
                handler.close()
        logger.propagate = False
        logger.setLevel(logging.CRITICAL + 1)

    if not enabled:
        return

    if not log_stderr and not log_file:
        log_stderr = True

    formatter = logging.Formatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    redact = RedactSecretsFilter()
    handlers: list[logging.Handler] = []

    if log_stderr:
        stderr_handler = logging.StreamHandler()
        stderr_handler.setFormatter(formatter)
        stderr_handler.addFilter(redact)
        handlers.append(stderr_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler.addFilter(redact)
        handlers.append(file_handler)

    for domain, level in enabled.items():
        logger = logging.getLogger(LOG_DOMAINS[domain])
        logger.setLevel(level)
        for handler in handlers:
            logger.addHandler(handler)
