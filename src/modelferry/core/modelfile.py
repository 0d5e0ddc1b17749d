"""Runtime Modelfile synthesis for full models and adapters."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from .detect import MODEL_CONFIG_FILE, DetectedModelType, ModelKind, payload_root
from .errors import ModelfileError

logger = logging.getLogger(__name__)

MODELFILE_NAME = "Modelfile"
WEIGHT_SUFFIXES = (".safetensors", ".bin", ".gguf")
_DIRECTIVES = ("FROM", "ADAPTER")


def find_weight_files(model_path: Path) -> list[Path]:
    """Return recognized weight files below ``model_path`` in a stable order."""
    if not model_path.is_dir():
        return []
    return sorted(
        candidate
        for candidate in model_path.rglob("*")
        if candidate.is_file() and candidate.suffix.lower() in WEIGHT_SUFFIXES
    )


def locate_weights(model_path: Path) -> Path:
    """Resolve the path a full model's ``FROM`` directive should reference.

    Sharded safetensors are loaded as a directory, so when any are present
    the directory holding them is used rather than an individual file.
    """
    resolved = payload_root(model_path)
    weights = find_weight_files(resolved)
    if not weights:
        logger.warning("no weight files (%s) found under %s", ", ".join(WEIGHT_SUFFIXES), resolved)
        return resolved

    logger.info("found %d weight file(s) under %s", len(weights), resolved)
    safetensors = [item for item in weights if item.suffix.lower() == ".safetensors"]
    if safetensors:
        return safetensors[0].parent
    return resolved


def ensure_adapter_metadata(base_path: Path, adapter_path: Path) -> bool:
    """Copy the base model's ``config.json`` next to the adapter files if missing.

    The base model directory is only read from.
    """
    target = adapter_path / MODEL_CONFIG_FILE
    if target.exists():
        return False

    source = payload_root(base_path) / MODEL_CONFIG_FILE
    if not source.is_file():
        source = base_path / MODEL_CONFIG_FILE
    if not source.is_file():
        logger.warning("base model at %s has no %s to copy", base_path, MODEL_CONFIG_FILE)
        return False

    shutil.copyfile(source, target)
    logger.info("copied %s into adapter directory %s", source, adapter_path)
    return True


def render_modelfile(from_path: Path, adapter_path: Path | None = None) -> str:
    lines = [f"FROM {from_path}"]
    if adapter_path is not None:
        lines.append(f"ADAPTER {adapter_path}")
    return "\n".join(lines) + "\n"


def parse_modelfile(content: str) -> dict[str, str]:
    """Read ``FROM``/``ADAPTER`` directives back out of Modelfile text."""
    directives: dict[str, str] = {}
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        keyword, _, value = line.partition(" ")
        keyword = keyword.upper()
        if keyword in _DIRECTIVES and value.strip():
            directives[keyword] = value.strip()
    return directives


def build(
    model_type: DetectedModelType,
    model_path: Path,
    adapter_path: Path | None,
    output_dir: Path,
) -> Path:
    """Write a Modelfile for ``model_type`` into ``output_dir`` and return its path.

    For full models ``model_path`` is the extracted upload. For adapters it is
    the resolved base model and ``adapter_path`` the extracted upload.
    """
    if model_type.kind is ModelKind.DELTA:
        if adapter_path is None:
            raise ModelfileError("adapter model requires an adapter directory")
        base_root = payload_root(model_path)
        ensure_adapter_metadata(model_path, adapter_path)
        content = render_modelfile(base_root, adapter_path)
    else:
        content = render_modelfile(locate_weights(model_path))

    output_dir.mkdir(parents=True, exist_ok=True)
    modelfile_path = output_dir / MODELFILE_NAME
    temp_path = modelfile_path.with_suffix(".tmp")
    try:
        temp_path.write_text(content, encoding="utf-8")
        temp_path.replace(modelfile_path)
    except OSError as exc:
        raise ModelfileError(f"unable to write {modelfile_path}: {exc}") from exc

    logger.info("wrote %s:\n%s", modelfile_path, content.rstrip())
    return modelfile_path
