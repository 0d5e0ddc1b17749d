"""Filesystem layout for local modelferry state."""

from __future__ import annotations

import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._-]*$")


@dataclass(frozen=True)
class FerryPaths:
    """Filesystem layout for uploads, extracted models and the base-model cache."""

    base_dir: Path

    @classmethod
    def default(cls) -> FerryPaths:
        override = os.environ.get("MODELFERRY_HOME")
        if override:
            return cls(base_dir=Path(override).expanduser())
        return cls(base_dir=Path.home() / ".modelferry")

    @property
    def uploads_dir(self) -> Path:
        return self.base_dir / "uploads"

    @property
    def staging_dir(self) -> Path:
        return self.base_dir / "temp-uploads"

    @property
    def models_dir(self) -> Path:
        return self.base_dir / "models"

    @property
    def base_models_dir(self) -> Path:
        return self.base_dir / "base_models"

    @property
    def config_path(self) -> Path:
        return self.base_dir / "config.json"

    @property
    def database_path(self) -> Path:
        return self.base_dir / "modelferry.db"

    def archive_path(self, model_id: str) -> Path:
        return self.uploads_dir / f"{validate_name(model_id)}.zip"

    def extract_dir(self, model_id: str) -> Path:
        return self.models_dir / validate_name(model_id)

    def modelfile_dir(self, model_id: str) -> Path:
        return self.models_dir / f"{validate_name(model_id)}_modelfile"


def validate_name(name: str) -> str:
    """Reject identifiers that could escape their parent directory."""
    if not _NAME_PATTERN.fullmatch(name) or ".." in name:
        raise ValueError(f"invalid name: {name!r}")
    return name


def remove_path(path: Path) -> bool:
    """Best-effort removal of a file or directory tree; never raises."""
    if not path.exists() and not path.is_symlink():
        return False
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except OSError as exc:
        logger.warning("unable to remove %s: %s", path, exc)
        return False
    return True

