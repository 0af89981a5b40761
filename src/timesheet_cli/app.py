from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass, field
from typing import Any, Callable

import click
import typer
from typer.core import TyperGroup

from . import auth as auth_mod
from . import sdk as sdk_mod
from .util import config as config_mod
from .util.common import mask_secret
from .util.errors import CliError, EXIT_GENERAL_ERROR
from .util.logging import configure_logging, parse_log_specs

APP_LOGGER = logging.getLogger("timesheet.app")

GLOBAL_BOOL_FLAGS = {"--log-stderr"}
GLOBAL_OPTS_WITH_VALUE = {"--log", "--log-file", "--api-key"}
KNOWN_OPTS_WITH_VALUE = {"--set"}
API_KEY_PREFIX = "ts_"

ROOT_COMMAND_ORDER = {
    "auth": 0,
    "config": 1,
}


@dataclass(slots=True)
class Runtime:
    enabled_logs: dict[str, int]
    log_stderr: bool
    log_file: str | None
    api_key: str | None = None
    _session: sdk_mod.ClientSession | None = field(default=None, repr=False)

    def session(self) -> sdk_mod.ClientSession:
        if self._session is None:
            self._session = sdk_mod.ClientSession(
                auth_mod.default_context(), api_key=self.api_key
            )
        return self._session


class RootHelpOrderGroup(TyperGroup):
    def list_commands(self, ctx: click.Context) -> list[str]:
        names = list(super().list_commands(ctx))
        return sorted(
            names, key=lambda name: (ROOT_COMMAND_ORDER.get(name, 1000), name)
        )


def _json_dump(value: dict[str, Any]) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def emit_success(result: Any | None = None) -> None:
    payload: dict[str, Any] = {"ok": True}
    if result is not None:
        payload["result"] = result
    typer.echo(_json_dump(payload))


def emit_error(
    message: str, *, exit_code: int = EXIT_GENERAL_ERROR, hint: str | None = None
) -> None:
    payload: dict[str, Any] = {"ok": False, "error": str(message)}
    if hint:
        payload["hint"] = hint
    typer.echo(_json_dump(payload))
    raise typer.Exit(code=exit_code)


def _run_json_command(fn: Callable[[], Any]) -> None:
    try:
        result = fn()
    except typer.Exit:
        raise
    except CliError as exc:
        emit_error(str(exc) or "invalid input", exit_code=exc.exit_code, hint=exc.hint)
    except ValueError as exc:
        emit_error(str(exc) or "invalid input")
    except Exception:
        APP_LOGGER.exception("Unhandled exception")
        emit_error("internal error")
    emit_success(result)


def _runtime(ctx: typer.Context) -> Runtime:
    runtime = ctx.find_root().obj
    if not isinstance(runtime, Runtime):
        raise RuntimeError("runtime not initialized")
    return runtime


def normalize_cli_argv(argv: list[str]) -> list[str]:
    """Allow known root/global options to appear later in argv.

    Click/Typer root options normally need to appear before the first subcommand.
    We pre-scan argv and hoist the known global options while preserving
    relative order of both the hoisted tokens and the remaining tokens.

    Parsing stops at `--` so values after that remain untouched.
    """

    if not argv:
        return argv

    hoisted: list[str] = []
    rest: list[str] = []
    i = 0
    while i < len(argv):
        token = argv[i]
        if token == "--":
            rest.extend(argv[i:])
            break

        name, sep, _value = token.partition("=")

        if name in GLOBAL_BOOL_FLAGS and sep == "":
            hoisted.append(token)
            i += 1
            continue

        if name in GLOBAL_OPTS_WITH_VALUE and sep == "=":
            hoisted.append(token)
            i += 1
            continue

        if token in GLOBAL_OPTS_WITH_VALUE:
            if i + 1 < len(argv):
                hoisted.extend([token, argv[i + 1]])
                i += 2
                continue
            # Let Click/Typer produce the usage error if the value is missing.
            rest.append(token)
            i += 1
            continue

        if token in KNOWN_OPTS_WITH_VALUE and i + 1 < len(argv):
            rest.extend([token, argv[i + 1]])
            i += 2
            continue

        rest.append(token)
        i += 1

    if not hoisted:
        return argv
    return [*hoisted, *rest]


app = typer.Typer(
    cls=RootHelpOrderGroup,
    no_args_is_help=True,
    add_completion=False,
    pretty_exceptions_enable=False,
    help="Timesheet command-line client.",
)
auth_app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    pretty_exceptions_enable=False,
    help="Authentication commands.",
)
config_app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    pretty_exceptions_enable=False,
    help="Configuration commands.",
)
app.add_typer(auth_app, name="auth")
app.add_typer(config_app, name="config")


@app.callback()
def main_callback(
    ctx: typer.Context,
    log_specs: list[str] | None = typer.Option(
        None,
        "--log",
        help="Enable logs by domain (`app`, `auth`, `api`, `all`) optionally with `:LEVEL`.",
    ),
    log_stderr: bool = typer.Option(
        False,
        "--log-stderr",
        help="Emit enabled logs to stderr.",
    ),
    log_file: str | None = typer.Option(
        None,
        "--log-file",
        help="Write enabled logs to this file.",
        metavar="PATH",
    ),
    api_key: str | None = typer.Option(
        None,
        "--api-key",
        help=f"API key to use instead of stored credentials (or set {config_mod.API_KEY_ENV}).",
        metavar="KEY",
    ),
) -> None:
    specs = log_specs or []
    try:
        enabled_logs = parse_log_specs(specs)
        configure_logging(
            enabled=enabled_logs, log_stderr=log_stderr, log_file=log_file
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc))
    ctx.obj = Runtime(
        enabled_logs=enabled_logs,
        log_stderr=log_stderr,
        log_file=log_file,
        api_key=api_key,
    )
    APP_LOGGER.debug("runtime initialized")


@auth_app.callback()
def auth_group() -> None:
    return


@auth_app.command("login", help="Log in through the browser (OAuth 2.1 with PKCE).")
def auth_login(
    ctx: typer.Context,
    force: bool = typer.Option(
        False, "--force", help="Log in again even if already authenticated."
    ),
) -> None:
    runtime = _runtime(ctx)

    def _login() -> dict[str, Any]:
        session = runtime.session()
        result = auth_mod.login(session.ctx, force=force)
        session.invalidate()
        return result

    _run_json_command(_login)


@auth_app.command("logout", help="Revoke and remove stored OAuth tokens.")
def auth_logout(
    ctx: typer.Context,
    forget_client: bool = typer.Option(
        False,
        "--forget-client",
        help="Also remove the registered OAuth client.",
    ),
) -> None:
    runtime = _runtime(ctx)

    def _logout() -> dict[str, Any]:
        session = runtime.session()
        result = auth_mod.logout(session.ctx, forget_client=forget_client)
        session.clear_client()
        return result

    _run_json_command(_logout)


def _api_key_status(credential: sdk_mod.Credential) -> dict[str, Any]:
    return {
        "authenticated": True,
        "method": credential.method,
        "source": credential.source,
        "api_key": mask_secret(credential.token),
    }


@auth_app.command("status", help="Show which credential would be used.")
def auth_status(ctx: typer.Context) -> None:
    runtime = _runtime(ctx)

    def _status() -> dict[str, Any]:
        session = runtime.session()
        for provider in sdk_mod.api_key_providers(api_key=runtime.api_key):
            credential = provider.try_resolve()
            if credential is not None:
                return _api_key_status(credential)
        status = auth_mod.get_auth_status(session.ctx)
        if status["authenticated"]:
            return status
        credential = sdk_mod.StoredApiKeyProvider(session.ctx).try_resolve()
        if credential is not None:
            return _api_key_status(credential)
        return status

    _run_json_command(_status)


@auth_app.command("apikey", help="Show, store, or clear the saved API key.")
def auth_apikey(
    ctx: typer.Context,
    set_key: str | None = typer.Option(None, "--set", metavar="KEY"),
    clear: bool = typer.Option(False, "--clear", help="Remove the saved API key."),
) -> None:
    runtime = _runtime(ctx)
    if set_key is not None and clear:
        raise typer.BadParameter("use either --set or --clear, not both", param_hint="--set")

    def _apikey() -> dict[str, Any]:
        session = runtime.session()
        store = session.ctx.session
        if clear:
            store.clear_api_key()
            session.clear_client()
            return {"cleared": True}
        if set_key is not None:
            key = set_key.strip()
            if not key:
                raise ValueError("API key must not be empty")
            if not key.startswith(API_KEY_PREFIX):
                # Human-only guidance on stderr; stdout remains JSON result.
                print(
                    f"Warning: API keys usually start with '{API_KEY_PREFIX}'.",
                    file=sys.stderr,
                )
            store.store_api_key(key)
            session.clear_client()
            return {"stored": True, "api_key": mask_secret(key)}

        env_key = config_mod.get_api_key_from_env()
        stored_key = store.get_stored_api_key()
        return {
            "env": mask_secret(env_key) if env_key else None,
            "stored": mask_secret(stored_key) if stored_key else None,
        }

    _run_json_command(_apikey)


@auth_app.command("token", help="Print the credential in use, refreshing if needed.")
def auth_token(ctx: typer.Context) -> None:
    runtime = _runtime(ctx)

    def _token() -> dict[str, Any]:
        client = runtime.session().get_client()
        return {
            "method": client.credential.method,
            "source": client.credential.source,
            "token": client.credential.token,
        }

    _run_json_command(_token)


@config_app.callback()
def config_group() -> None:
    return


@config_app.command("show", help="Show effective configuration.")
def config_show(ctx: typer.Context) -> None:
    _ = _runtime(ctx)
    _run_json_command(
        lambda: {
            "config_dir": str(config_mod.get_config_dir()),
            "values": config_mod.get_all_config(),
        }
    )


@config_app.command("set", help="Set a configuration value.")
def config_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., metavar="KEY"),
    value: str = typer.Argument(..., metavar="VALUE"),
) -> None:
    _ = _runtime(ctx)
    _run_json_command(
        lambda: {"key": key, "value": config_mod.set_config(key, value)}
    )


@config_app.command("reset", help="Restore default configuration.")
def config_reset(ctx: typer.Context) -> None:
    _ = _runtime(ctx)
    _run_json_command(lambda: {"values": config_mod.reset_config()})


def main() -> None:
    normalized = normalize_cli_argv(sys.argv[1:])
    if normalized != sys.argv[1:]:
        sys.argv = [sys.argv[0], *normalized]
    app()
