from __future__ import annotations

import json
import logging
from typing import Any
from urllib import error as urlerror
from urllib import parse as urlparse
from urllib import request as urlrequest

from .errors import HttpJsonError, NetworkError

LOGGER = logging.getLogger("timesheet.auth")

USER_AGENT = "timesheet-cli/0.1"
DEFAULT_TIMEOUT_S = 10.0


def http_json(
    method: str,
    url: str,
    *,
    form: dict[str, str] | None = None,
    json_body: dict[str, Any] | list[Any] | None = None,
    extra_headers: dict[str, str] | None = None,
    timeout_s: float = DEFAULT_TIMEOUT_S,
    logger: logging.Logger | None = None,
) -> Any:
    """Send a request and decode the JSON reply.

    Non-2xx replies raise ``HttpJsonError``; transport failures and timeouts
    raise ``NetworkError``. Form bodies are logged by key names only.
    """
    log = logger or LOGGER
    if form is not None and json_body is not None:
        raise ValueError("internal error: form and json_body are mutually exclusive")
    headers = {
        "User-Agent": USER_AGENT,
        "Accept": "application/json",
    }
    data: bytes | None = None
    if form is not None:
        data = urlparse.urlencode(form).encode("utf-8")
        headers["Content-Type"] = "application/x-www-form-urlencoded"
        log.info("http %s %s form_keys=%s", method, url, ",".join(sorted(form)))
    elif json_body is not None:
        data = json.dumps(json_body, separators=(",", ":")).encode("utf-8")
        headers["Content-Type"] = "application/json"
        log.info("http %s %s json", method, url)
    else:
        log.info("http %s %s", method, url)

    if extra_headers:
        headers.update(extra_headers)

    req = urlrequest.Request(url=url, method=method, data=data, headers=headers)
    try:
        with urlrequest.urlopen(req, timeout=timeout_s) as resp:
            status = getattr(resp, "status", 200)
            text = resp.read().decode("utf-8", errors="replace")
    except urlerror.HTTPError as exc:
        text = exc.read().decode("utf-8", errors="replace")
        payload: Any | None = None
        try:
            payload = json.loads(text) if text else None
        except json.JSONDecodeError:
            payload = None
        log.info("http %s %s -> %s", method, url, exc.code)
        raise HttpJsonError(
            status=int(exc.code),
            url=url,
            body_text=text,
            payload=payload,
        ) from None
    except urlerror.URLError as exc:
        reason = getattr(exc, "reason", exc)
        log.info("http %s %s err=%s", method, url, reason)
        raise NetworkError(f"network error contacting {url}: {reason}") from None
    except OSError as exc:
        # Timeouts while reading the body surface as bare socket errors.
        log.info("http %s %s err=%s", method, url, exc)
        raise NetworkError(f"network error contacting {url}: {exc}") from None

    log.info("http %s %s -> %s", method, url, status)
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        raise NetworkError(f"invalid JSON response from {url}") from None
