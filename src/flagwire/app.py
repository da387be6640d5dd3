"""Typer application and CLI entry point for flagwire.

The ``flagwire`` command is a thin shell over :class:`~flagwire.client.FlagClient`
for inspecting an environment from a terminal::

    flagwire --api-key ser.abc flags
    flagwire --api-key ser.abc flags --identity user-1
    flagwire identity user-1 --json
    flagwire trait user-1 plan pro
    flagwire --use-cache --cache-ttl 300 --skip-api flags
    flagwire cache stats
    flagwire cache clear

Global options override ``FLAGWIRE_*`` environment variables, which
override ``flagwire.json`` in the working directory (see
:func:`flagwire.config.resolve_settings`).

:func:`main` is the console-script entry point declared in
``pyproject.toml``. :class:`~flagwire.exceptions.FlagwireError` exits with
its ``exit_code``; anything else writes a crash log under the data
directory.
"""

from __future__ import annotations

import signal
import sys
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import typer

from flagwire import __version__
from flagwire.exceptions import FlagwireError
from flagwire.exit_codes import EXIT_GENERIC_FAILURE
from flagwire.output import (
    OutputFormat,
    debug,
    error,
    format_response,
    get_output,
    info,
    print_table,
    success,
)

app = typer.Typer(
    name="flagwire",
    help="Query feature flags and identities from the command line.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)
cache_app = typer.Typer(no_args_is_help=True)
app.add_typer(cache_app, name="cache", help="Inspect or clear the response cache.")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"flagwire {__version__}")
        raise typer.Exit()


def _parse_headers(values: Optional[list[str]]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for raw in values or []:
        name, sep, value = raw.partition(":")
        if not sep or not name.strip():
            raise typer.BadParameter(f"Expected 'Name: value', got {raw!r}", param_hint="--header")
        headers[name.strip()] = value.strip()
    return headers


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit."
    ),
    api_key: Optional[str] = typer.Option(None, "--api-key", "-k", help="Environment key."),
    base_url: Optional[str] = typer.Option(None, "--base-url", help="API root URL."),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Request timeout in seconds."
    ),
    header: Optional[list[str]] = typer.Option(
        None, "--header", "-H", help="Extra header 'Name: value' (repeatable)."
    ),
    use_cache: Optional[bool] = typer.Option(
        None, "--use-cache/--no-cache", help="Read and write the response cache."
    ),
    cache_ttl: Optional[float] = typer.Option(
        None, "--cache-ttl", help="Cache freshness window in seconds."
    ),
    skip_api: Optional[bool] = typer.Option(
        None, "--skip-api/--no-skip-api", help="Serve fresh cached responses without loading."
    ),
    json_output: bool = typer.Option(False, "--json", help="JSON output format."),
    plain_output: bool = typer.Option(False, "--plain", help="Plain text output."),
    no_color: bool = typer.Option(False, "--no-color", help="Disable color output."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress non-essential output."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug output."),
) -> None:
    """Install the output manager and collect client overrides in ``ctx.obj``."""
    from flagwire.output import OutputManager, configure_logging, set_output

    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN
    set_output(OutputManager(format=fmt, no_color=no_color, quiet=quiet, verbose=verbose))
    configure_logging(verbose=verbose, no_color=no_color)

    ctx.ensure_object(dict)
    ctx.obj["overrides"] = {
        "api_key": api_key,
        "base_url": base_url,
        "request_timeout": timeout,
        "additional_headers": _parse_headers(header) or None,
        "use_cache": use_cache,
        "cache_ttl": cache_ttl,
        "skip_api": skip_api,
    }


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _settings(ctx: typer.Context) -> Any:
    from flagwire.config import resolve_settings

    overrides = (ctx.obj or {}).get("overrides", {})
    try:
        return resolve_settings(overrides)
    except FlagwireError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code)


def _open_client(settings: Any) -> Any:
    """Build the client for one command. Tests replace this to inject a transport."""
    from flagwire.client import FlagClient

    return FlagClient.from_settings(settings)


def _await(future: Any) -> Any:
    try:
        return future.result()
    except FlagwireError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code)


def _flag_rows(flags: list[Any]) -> list[list[str]]:
    return [
        [
            flag.feature.name,
            "on" if flag.enabled else "off",
            "" if flag.feature_state_value is None else str(flag.feature_state_value),
        ]
        for flag in flags
    ]


def _coerce_trait_value(raw: str) -> Any:
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    for cast in (int, float):
        try:
            return cast(raw)
        except ValueError:
            continue
    return raw


# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #


@app.command("flags")
def flags_command(
    ctx: typer.Context,
    identity: Optional[str] = typer.Option(
        None, "--identity", "-i", help="Show the flags of this identity."
    ),
) -> None:
    """List the environment's flags (or one identity's)."""
    settings = _settings(ctx)
    with _open_client(settings) as client:
        flags = _await(client.get_feature_flags(identity))
        updated_at = client.last_updated_at
    debug(f"Environment document updated at {updated_at}")
    if get_output().format == OutputFormat.JSON:
        format_response([flag.model_dump(mode="json") for flag in flags])
        return
    print_table(["feature", "enabled", "value"], _flag_rows(flags), title="Flags")


@app.command("identity")
def identity_command(
    ctx: typer.Context,
    identifier: str = typer.Argument(help="Identity identifier."),
) -> None:
    """Show one identity's flags and traits."""
    settings = _settings(ctx)
    with _open_client(settings) as client:
        identity = _await(client.get_identity(identifier))
    if get_output().format == OutputFormat.JSON:
        format_response(identity.model_dump(mode="json"))
        return
    print_table(["feature", "enabled", "value"], _flag_rows(identity.flags), title="Flags")
    print_table(
        ["trait", "value"],
        [[t.trait_key, str(t.trait_value)] for t in identity.traits],
        title="Traits",
    )


@app.command("trait")
def trait_command(
    ctx: typer.Context,
    identifier: str = typer.Argument(help="Identity identifier."),
    key: str = typer.Argument(help="Trait key."),
    value: str = typer.Argument(help="Trait value (true/false and numbers are coerced)."),
) -> None:
    """Set a trait on an identity."""
    from flagwire.models import Trait

    settings = _settings(ctx)
    with _open_client(settings) as client:
        trait = Trait(trait_key=key, trait_value=_coerce_trait_value(value))
        _await(client.set_trait(trait, identifier))
    success(f"Set {key} on {identifier}")


def _cache_store(ctx: typer.Context) -> Any:
    from flagwire.cache import ResponseStore, get_shared_store

    settings = _settings(ctx)
    if settings.cache_dir:
        return ResponseStore(Path(settings.cache_dir))
    return get_shared_store()


@cache_app.command("stats")
def cache_stats(ctx: typer.Context) -> None:
    """Show the number of cached responses and their size."""
    store = _cache_store(ctx)
    format_response(store.stats())


@cache_app.command("clear")
def cache_clear(ctx: typer.Context) -> None:
    """Remove every cached response."""
    store = _cache_store(ctx)
    store.clear()
    info(f"Cache directory: {store.directory}")
    success("Cache cleared")


# ------------------------------------------------------------------ #
# Entry point
# ------------------------------------------------------------------ #


def _setup_signal_handlers() -> None:
    """Exit with status 130 and no traceback on Ctrl-C."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write the current traceback under the data directory and return its path."""
    from flagwire.config import get_data_dir

    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(traceback.format_exc())
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``flagwire`` console script.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)
    except FlagwireError as exc:
        error(str(exc))
        sys.exit(exc.exit_code)
    except Exception as exc:
        log_path = _write_crash_log(exc)
        error(f"Unexpected error. Debug log: {log_path}")
        sys.exit(EXIT_GENERIC_FAILURE)
