from __future__ import annotations

from typing import Any

EXIT_GENERAL_ERROR = 1
EXIT_USAGE_ERROR = 2
EXIT_AUTH_ERROR = 3
EXIT_NETWORK_ERROR = 6

AUTH_HINT = (
    'run "timesheet auth login" to authenticate, '
    "or set an API key with `export TIMESHEET_API_KEY=your-api-key`"
)


class CliError(ValueError):
    exit_code = EXIT_GENERAL_ERROR
    hint: str | None = None


class UsageError(CliError):
    exit_code = EXIT_USAGE_ERROR


class AuthError(CliError):
    exit_code = EXIT_AUTH_ERROR
    hint = AUTH_HINT


class CsrfError(AuthError):
    pass


class CallbackTimeoutError(AuthError):
    pass


class AuthorizationDeniedError(AuthError):
    def __init__(self, error: str, description: str | None = None) -> None:
        self.error = error
        self.description = description
        super().__init__(f"Authorization failed: {description or error}")


class NetworkError(CliError):
    exit_code = EXIT_NETWORK_ERROR


class HttpJsonError(RuntimeError):
    def __init__(
        self,
        *,
        status: int,
        url: str,
        body_text: str,
        payload: Any | None,
    ) -> None:
        self.status = status
        self.url = url
        self.body_text = body_text
        self.payload = payload
        super().__init__(f"HTTP {status} for {url}")

    def oauth_message(self) -> str:
        payload = self.payload if isinstance(self.payload, dict) else {}
        for key in ("error_description", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return f"HTTP {self.status}"
