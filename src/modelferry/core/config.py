"""Persistent modelferry configuration defaults."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
)

from .storage import FerryPaths

DEFAULT_RUNTIME_COMMAND = ("ollama",)


class ImportDefaults(BaseModel):
    """Settings applied to uploads and the background import pipeline."""

    model_config = ConfigDict(extra="forbid", strict=True)

    runtime_command: list[StrictStr] = Field(
        default_factory=lambda: list(DEFAULT_RUNTIME_COMMAND),
        min_length=1,
    )
    base_model_url_template: StrictStr | None = None
    create_timeout_seconds: StrictInt | None = Field(default=3600, gt=0)
    delete_timeout_seconds: StrictInt | None = Field(default=120, gt=0)
    download_timeout_seconds: StrictInt | None = Field(default=3600, gt=0)
    flush_every_chunks: StrictInt = Field(default=10, gt=0)
    session_ttl_seconds: StrictInt | None = Field(default=86400, gt=0)

    @field_validator("base_model_url_template")
    @classmethod
    def validate_url_template(cls, value: str | None) -> str | None:
        if value is not None and "{name}" not in value:
            raise ValueError("base_model_url_template must contain a {name} placeholder")
        return value


class DaemonDefaults(BaseModel):
    """Optional daemon defaults."""

    model_config = ConfigDict(extra="forbid", strict=True)

    host: StrictStr | None = None


class FerryConfig(BaseModel):
    """Top-level persisted modelferry config."""

    model_config = ConfigDict(extra="forbid", strict=True)

    version: StrictInt = 1
    imports: ImportDefaults = Field(default_factory=ImportDefaults)
    daemon: DaemonDefaults = Field(default_factory=DaemonDefaults)


CONFIG_KEY_DESCRIPTIONS: dict[str, str] = {
    "imports.base_model_url_template": "URL template for base model archives; {name} is replaced.",
    "imports.create_timeout_seconds": "Time budget for one runtime create command.",
    "imports.delete_timeout_seconds": "Time budget for one runtime rm command.",
    "imports.download_timeout_seconds": "Time budget for downloading one base model archive.",
    "imports.flush_every_chunks": "Flush the assembled archive after this many chunks.",
    "imports.session_ttl_seconds": "Discard upload sessions left incomplete for this long.",
    "daemon.host": "Default host:port binding for the daemon.",
}


class ConfigFileError(RuntimeError):
    """Raised when the persisted config cannot be parsed or validated."""


@dataclass(frozen=True)
class ImportSettings:
    """Effective, read-only import settings resolved once at startup."""

    runtime_command: tuple[str, ...]
    base_model_url_template: str | None
    create_timeout_seconds: float | None
    delete_timeout_seconds: float | None
    download_timeout_seconds: float | None
    flush_every_chunks: int
    session_ttl_seconds: float | None


def get_config_path(paths: FerryPaths) -> Path:
    """Resolve config file path for one modelferry home."""
    return paths.config_path


def load_config(paths: FerryPaths) -> FerryConfig:
    """Load config file or return defaults when missing."""
    config_path = get_config_path(paths)
    if not config_path.exists():
        return FerryConfig()

    try:
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigFileError(f"invalid JSON in {config_path}: {exc.msg}") from exc
    except OSError as exc:
        raise ConfigFileError(f"unable to read {config_path}: {exc}") from exc

    try:
        return FerryConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigFileError(f"invalid config in {config_path}: {exc}") from exc


def save_config(paths: FerryPaths, config: FerryConfig) -> None:
    """Atomically persist config using a .tmp file then rename."""
    config_path = get_config_path(paths)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = config_path.with_name(f"{config_path.name}.tmp")
    payload = config.model_dump(mode="json")
    temp_path.write_text(
        json.dumps(payload, indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )
    temp_path.replace(config_path)


def update_config(paths: FerryPaths, updates: dict[str, Any]) -> FerryConfig:
    """Apply partial updates and persist the resulting config."""
    current = load_config(paths)
    merged = current.model_dump(mode="json")
    _deep_merge_dict(merged, updates)
    try:
        updated = FerryConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigFileError(f"invalid config update: {exc}") from exc
    save_config(paths, updated)
    return updated


def resolve_import_settings(
    config: FerryConfig,
    *,
    env: Mapping[str, str] | None = None,
) -> ImportSettings:
    """Resolve effective import settings with precedence env > config > defaults."""
    env_mapping = env or {}
    imports = config.imports

    runtime_command = tuple(imports.runtime_command)
    runtime_override = _optional_nonempty_str(env_mapping.get("MODELFERRY_RUNTIME"))
    if runtime_override is not None:
        runtime_command = (runtime_override, *runtime_command[1:])

    url_template = imports.base_model_url_template
    url_override = _optional_nonempty_str(env_mapping.get("MODELFERRY_BASE_MODEL_URL"))
    if url_override is not None:
        if "{name}" not in url_override:
            raise ConfigFileError("MODELFERRY_BASE_MODEL_URL must contain a {name} placeholder")
        url_template = url_override

    return ImportSettings(
        runtime_command=runtime_command,
        base_model_url_template=url_template,
        create_timeout_seconds=_optional_float(imports.create_timeout_seconds),
        delete_timeout_seconds=_optional_float(imports.delete_timeout_seconds),
        download_timeout_seconds=_optional_float(imports.download_timeout_seconds),
        flush_every_chunks=imports.flush_every_chunks,
        session_ttl_seconds=_optional_float(imports.session_ttl_seconds),
    )


def _deep_merge_dict(target: dict[str, Any], updates: dict[str, Any]) -> None:
    for key, value in updates.items():
        existing = target.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            _deep_merge_dict(existing, value)
            continue
        target[key] = value


def _optional_nonempty_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _optional_float(value: int | None) -> float | None:
    return None if value is None else float(value)
