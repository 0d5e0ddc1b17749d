"""Typer-based CLI for serving modelferry and importing model archives."""

from __future__ import annotations

import json
import sys
from difflib import get_close_matches
from pathlib import Path
from typing import Any, Literal, NoReturn, cast

import typer
import uvicorn
from tqdm import tqdm

from modelferry.core.config import (
    CONFIG_KEY_DESCRIPTIONS,
    ConfigFileError,
    FerryConfig,
    load_config,
    update_config,
)
from modelferry.core.storage import FerryPaths

from .client import (
    DEFAULT_BASE_URL,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_DAEMON_HOST,
    DEFAULT_DAEMON_PORT,
    FerryClient,
)

app = typer.Typer(help="Upload model archives and import them into a local model runtime.")
config_app = typer.Typer(help="Manage local modelferry defaults in ~/.modelferry/config.json.")
app.add_typer(config_app, name="config")

_APP_FACTORY = "modelferry.daemon.app:create_app"
_CONFIG_KEY_PATHS: dict[str, tuple[str, str]] = {
    key: cast(tuple[str, str], tuple(key.split(".", maxsplit=1)))
    for key in CONFIG_KEY_DESCRIPTIONS
}
_INT_CONFIG_KEYS = {
    "imports.create_timeout_seconds",
    "imports.delete_timeout_seconds",
    "imports.download_timeout_seconds",
    "imports.flush_every_chunks",
    "imports.session_ttl_seconds",
}
_TABLE_MAX_COL_WIDTH = 48
_TABLE_DEFAULT_GAP = 2

ProgressMode = Literal["auto", "on", "off"]

_COLOR_SUCCESS = typer.colors.GREEN
_COLOR_WARNING = typer.colors.YELLOW
_COLOR_ERROR = typer.colors.RED
_COLOR_DIM = typer.colors.BRIGHT_BLACK


def _exit_with_message(message: str, *, code: int = 2) -> NoReturn:
    typer.echo(message)
    raise typer.Exit(code=code)


def _style_text(
    text: str,
    *,
    fg: int | None = None,
    bold: bool = False,
    dim: bool = False,
) -> str:
    return typer.style(text, fg=fg, bold=bold, dim=dim)


def _resolve_progress_enabled(mode: ProgressMode) -> bool:
    if mode == "on":
        return True
    if mode == "off":
        return False
    return bool(getattr(sys.stderr, "isatty", lambda: False)())


def _error_hint(exc: BaseException) -> str | None:
    value = getattr(exc, "hint", None)
    if isinstance(value, str):
        normalized = value.strip()
        if normalized:
            return normalized
    return None


def _exit_with_runtime_error(exc: RuntimeError, *, code: int = 1) -> NoReturn:
    typer.echo(_style_text(f"Error: {exc}", fg=_COLOR_ERROR), err=True)
    hint = _error_hint(exc)
    if hint is not None:
        typer.echo(_style_text(f"Hint: {hint}", fg=_COLOR_WARNING), err=True)
    raise typer.Exit(code=code) from exc


def _complete_config_keys(*args: Any) -> list[str]:
    incomplete = str(args[-1]) if args else ""
    return [key for key in sorted(_CONFIG_KEY_PATHS) if key.startswith(incomplete)]


@app.command("serve")
def serve(
    host: str = typer.Option(DEFAULT_DAEMON_HOST, help="Host to bind for the daemon."),
    port: int = typer.Option(DEFAULT_DAEMON_PORT, help="Port to bind for the daemon."),
    log_level: str = typer.Option("info", help="Uvicorn log level."),
) -> None:
    """Run the modelferry daemon HTTP server."""
    uvicorn.run(_APP_FACTORY, factory=True, host=host, port=port, log_level=log_level)


@app.command("import")
def import_archive(
    archive: Path = typer.Argument(
        ...,
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
        help="Zip archive holding a full model or an adapter.",
    ),
    name: str | None = typer.Option(
        None,
        "--name",
        help="Display name for the model. Defaults to the archive file stem.",
    ),
    chunk_size: int = typer.Option(
        DEFAULT_CHUNK_SIZE,
        "--chunk-size",
        min=1,
        help="Upload chunk size in bytes.",
    ),
    wait: bool = typer.Option(
        False,
        "--wait",
        help="Poll until the import is ready or failed.",
    ),
    poll_interval: float = typer.Option(
        2.0,
        "--poll-interval",
        min=0.1,
        help="Seconds between status polls.",
    ),
    json_output: bool = typer.Option(False, "--json", help="Print JSON output."),
    base_url: str = typer.Option(
        DEFAULT_BASE_URL,
        help="Daemon base URL. Defaults to http://localhost:11436.",
    ),
    timeout: float = typer.Option(300.0, min=0.1, help="HTTP timeout in seconds."),
    progress: ProgressMode = typer.Option(
        "auto",
        "--progress",
        help="Progress display mode: auto, on, or off.",
    ),
) -> None:
    """Upload an archive in chunks and start its import."""
    client = _make_client(base_url=base_url, timeout=timeout)
    model_name = name or archive.stem
    progress_bar: tqdm[Any] | None = None
    if _resolve_progress_enabled(progress):
        progress_bar = tqdm(
            total=archive.stat().st_size,
            unit="B",
            unit_scale=True,
            desc="upload",
            file=sys.stderr,
            leave=False,
            dynamic_ncols=True,
        )

    def _on_chunk(_index: int, _total: int, size: int) -> None:
        if progress_bar is not None:
            progress_bar.update(size)

    try:
        result = client.upload_archive(
            archive,
            model_name=model_name,
            chunk_size=chunk_size,
            on_chunk=_on_chunk,
        )
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)
    finally:
        if progress_bar is not None:
            progress_bar.close()

    model_id = result.get("modelId")
    if wait and isinstance(model_id, str):
        try:
            result = client.wait_for_model(model_id, interval=poll_interval)
        except (RuntimeError, TimeoutError) as exc:
            _exit_with_runtime_error(RuntimeError(str(exc)))

    if json_output:
        typer.echo(json.dumps(result, indent=2, sort_keys=True))
    else:
        _echo_import_result(result)
    if result.get("status") == "failed":
        raise typer.Exit(code=1)


@app.command("list")
def list_models(
    json_output: bool = typer.Option(False, "--json", help="Print JSON output."),
    base_url: str = typer.Option(
        DEFAULT_BASE_URL,
        help="Daemon base URL. Defaults to http://localhost:11436.",
    ),
    timeout: float = typer.Option(10.0, min=0.1, help="HTTP timeout in seconds."),
) -> None:
    """List imported models via GET /api/models."""
    client = _make_client(base_url=base_url, timeout=timeout)
    try:
        response = client.list_models()
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)
    if json_output:
        typer.echo(json.dumps(response, indent=2, sort_keys=True))
        return

    models = response.get("models")
    if not isinstance(models, list):
        models = []
    typer.echo(_render_model_table(models))


@app.command("status")
def status(
    model_id: str = typer.Argument(..., help="Model id returned by import."),
    base_url: str = typer.Option(
        DEFAULT_BASE_URL,
        help="Daemon base URL. Defaults to http://localhost:11436.",
    ),
    timeout: float = typer.Option(10.0, min=0.1, help="HTTP timeout in seconds."),
) -> None:
    """Show one model record via GET /api/models/{id}."""
    client = _make_client(base_url=base_url, timeout=timeout)
    try:
        response = client.show_model(model_id)
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)
    typer.echo(json.dumps(response, indent=2, sort_keys=True))


@app.command("rm")
def rm(
    model_id: str = typer.Argument(..., help="Model id to remove."),
    base_url: str = typer.Option(
        DEFAULT_BASE_URL,
        help="Daemon base URL. Defaults to http://localhost:11436.",
    ),
    timeout: float = typer.Option(150.0, min=0.1, help="HTTP timeout in seconds."),
) -> None:
    """Delete a model from the runtime and disk via DELETE /api/models/{id}."""
    client = _make_client(base_url=base_url, timeout=timeout)
    try:
        response = client.remove_model(model_id)
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)
    typer.echo(json.dumps(response, indent=2, sort_keys=True))


@app.command("retry")
def retry(
    model_id: str = typer.Argument(..., help="Failed model id to import again."),
    base_url: str = typer.Option(
        DEFAULT_BASE_URL,
        help="Daemon base URL. Defaults to http://localhost:11436.",
    ),
    timeout: float = typer.Option(10.0, min=0.1, help="HTTP timeout in seconds."),
) -> None:
    """Re-run a failed import from its stored archive."""
    client = _make_client(base_url=base_url, timeout=timeout)
    try:
        response = client.retry_model(model_id)
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)
    typer.echo(json.dumps(response, indent=2, sort_keys=True))


@config_app.command("list")
def config_list(
    json_output: bool = typer.Option(False, "--json", help="Print compact JSON."),
) -> None:
    """Print current local config values."""
    try:
        config = load_config(FerryPaths.default())
    except ConfigFileError as exc:
        _exit_with_runtime_error(exc)

    payload = config.model_dump(mode="json")
    if json_output:
        typer.echo(json.dumps(payload, separators=(",", ":"), sort_keys=True))
        return
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


@config_app.command("get")
def config_get(
    key: str = typer.Argument(
        ...,
        help="Config key path (example: imports.base_model_url_template).",
        autocompletion=_complete_config_keys,
    ),
) -> None:
    """Get one config value."""
    key_path = _resolve_config_key_path(key)
    try:
        config = load_config(FerryPaths.default())
    except ConfigFileError as exc:
        _exit_with_runtime_error(exc)

    payload = config.model_dump(mode="json")
    value = payload[key_path[0]][key_path[1]]
    typer.echo(_format_config_scalar(value))


@config_app.command("set")
def config_set(
    key: str = typer.Argument(
        ...,
        help="Config key path (example: imports.base_model_url_template).",
        autocompletion=_complete_config_keys,
    ),
    value: str = typer.Argument(..., help="New value."),
) -> None:
    """Set one config value."""
    key_path = _resolve_config_key_path(key)
    parsed_value = _parse_config_value(key, value)
    updates = {key_path[0]: {key_path[1]: parsed_value}}
    try:
        update_config(FerryPaths.default(), updates)
    except ConfigFileError as exc:
        _exit_with_runtime_error(exc)


@config_app.command("unset")
def config_unset(
    key: str = typer.Argument(
        ...,
        help="Config key path (example: imports.base_model_url_template).",
        autocompletion=_complete_config_keys,
    ),
) -> None:
    """Unset one config value by writing null."""
    key_path = _resolve_config_key_path(key)
    updates = {key_path[0]: {key_path[1]: None}}
    try:
        update_config(FerryPaths.default(), updates)
    except ConfigFileError as exc:
        _exit_with_runtime_error(exc)


@config_app.command("keys")
def config_keys(
    json_output: bool = typer.Option(False, "--json", help="Print compact JSON."),
) -> None:
    """List writable config keys with descriptions and current values."""
    try:
        config = load_config(FerryPaths.default())
    except ConfigFileError as exc:
        _exit_with_runtime_error(exc)

    entries = _config_key_entries(config)
    if json_output:
        typer.echo(json.dumps(entries, separators=(",", ":"), sort_keys=True))
        return

    rows = [
        (entry["key"], _format_config_scalar(entry["value"]), entry["description"])
        for entry in entries
    ]
    typer.echo(_render_table(("KEY", "VALUE", "DESCRIPTION"), rows))


def _echo_import_result(result: dict[str, Any]) -> None:
    model_id = _string_or_dash(result.get("modelId") or result.get("id"))
    alias = _string_or_dash(result.get("alias"))
    state = _string_or_dash(result.get("status"))
    color = {"ready": _COLOR_SUCCESS, "failed": _COLOR_ERROR}.get(state, _COLOR_DIM)
    typer.echo(f"model {model_id} ({alias}): {_style_text(state, fg=color, bold=True)}")
    error = result.get("error")
    if isinstance(error, str) and error:
        typer.echo(_style_text(f"Error: {error}", fg=_COLOR_ERROR), err=True)


def _render_model_table(models: list[dict[str, Any]]) -> str:
    rows: list[tuple[str, str, str, str, str]] = []
    for model in models:
        if not isinstance(model, dict):
            continue
        size_value = model.get("size")
        if isinstance(size_value, int) and not isinstance(size_value, bool):
            size = _format_bytes(size_value)
        else:
            size = "-"
        rows.append(
            (
                _string_or_dash(model.get("id")),
                _string_or_dash(model.get("alias")),
                _string_or_dash(model.get("status")),
                size,
                _string_or_dash(model.get("createdAt")),
            )
        )

    if not rows:
        return "No models imported."
    return _render_table(("ID", "ALIAS", "STATUS", "SIZE", "CREATED"), rows, right_align={3})


def _render_table(
    headers: tuple[str, ...],
    rows: list[tuple[str, ...]],
    *,
    right_align: set[int] | None = None,
) -> str:
    normalized_rows = [
        tuple(_truncate_cell(str(value), max_width=_TABLE_MAX_COL_WIDTH) for value in row)
        for row in rows
    ]
    widths = [len(_truncate_cell(header, max_width=_TABLE_MAX_COL_WIDTH)) for header in headers]
    for row in normalized_rows:
        for index, value in enumerate(row):
            widths[index] = max(widths[index], len(value))

    gap = " " * _TABLE_DEFAULT_GAP
    header_line = gap.join(
        _align_cell(header, widths[idx], idx, right_align) for idx, header in enumerate(headers)
    )
    separator_line = gap.join("-" * width for width in widths)
    row_lines = [
        gap.join(_align_cell(value, widths[idx], idx, right_align) for idx, value in enumerate(row))
        for row in normalized_rows
    ]
    return "\n".join([header_line, separator_line, *row_lines])


def _truncate_cell(value: str, *, max_width: int) -> str:
    if len(value) <= max_width:
        return value
    return f"{value[: max_width - 3]}..."


def _align_cell(value: str, width: int, index: int, right_align: set[int] | None) -> str:
    if right_align is not None and index in right_align:
        return value.rjust(width)
    return value.ljust(width)


def _format_bytes(size: int) -> str:
    if size < 0:
        return "-"

    value = float(size)
    units = ("B", "KB", "MB", "GB", "TB")
    unit_index = 0
    while value >= 1024.0 and unit_index < len(units) - 1:
        value /= 1024.0
        unit_index += 1

    if unit_index == 0:
        return f"{int(value)} {units[unit_index]}"
    if value >= 10:
        return f"{value:.1f} {units[unit_index]}"
    return f"{value:.2f} {units[unit_index]}"


def _string_or_dash(value: Any) -> str:
    if isinstance(value, str) and value:
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return "-"


def _make_client(*, base_url: str, timeout: float) -> FerryClient:
    return FerryClient(base_url=base_url, timeout=timeout)


def _resolve_config_key_path(key: str) -> tuple[str, str]:
    key_path = _CONFIG_KEY_PATHS.get(key)
    if key_path is None:
        suggestion = get_close_matches(key, sorted(_CONFIG_KEY_PATHS), n=1, cutoff=0.6)
        if suggestion:
            _exit_with_message(f"unknown key {key!r}. Did you mean {suggestion[0]!r}?")
        supported = ", ".join(sorted(_CONFIG_KEY_PATHS))
        _exit_with_message(f"unknown key {key!r}. Supported keys: {supported}")
    return key_path


def _config_key_entries(config: FerryConfig) -> list[dict[str, Any]]:
    payload = config.model_dump(mode="json")
    entries: list[dict[str, Any]] = []
    for key in sorted(_CONFIG_KEY_PATHS):
        section, field = _CONFIG_KEY_PATHS[key]
        section_payload = payload.get(section)
        value: Any = None
        if isinstance(section_payload, dict):
            value = section_payload.get(field)
        entries.append(
            {
                "key": key,
                "value": value,
                "description": CONFIG_KEY_DESCRIPTIONS[key],
            }
        )
    return entries


def _parse_config_value(key: str, value: str) -> int | str | None:
    lowered = value.strip().lower()
    if lowered == "null":
        return None

    if key in _INT_CONFIG_KEYS:
        try:
            parsed = int(value)
        except ValueError as exc:
            raise typer.BadParameter(f"invalid integer value for {key!r}: {value!r}") from exc
        if parsed <= 0:
            raise typer.BadParameter(f"value for {key!r} must be > 0")
        return parsed

    return value


def _format_config_scalar(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


if __name__ == "__main__":
    app()
