"""Classify an extracted model tree as a full model or an adapter."""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

ADAPTER_CONFIG_FILE = "adapter_config.json"
MODEL_CONFIG_FILE = "config.json"
BASE_MODEL_KEY = "base_model_name_or_path"

_IGNORED_ENTRIES = frozenset({"__MACOSX", ".DS_Store", "Thumbs.db"})


class ModelKind(str, enum.Enum):
    FULL = "full"
    DELTA = "delta"


@dataclass(frozen=True)
class DetectedModelType:
    """Detection result; ``base_model_id`` is only meaningful for adapters."""

    kind: ModelKind
    root: Path
    base_model_id: str | None = None

    @classmethod
    def full(cls, root: Path) -> DetectedModelType:
        return cls(kind=ModelKind.FULL, root=root)

    @classmethod
    def delta(cls, root: Path, base_model_id: str | None) -> DetectedModelType:
        return cls(kind=ModelKind.DELTA, root=root, base_model_id=base_model_id)

    @property
    def requires_base_model(self) -> bool:
        return self.kind is ModelKind.DELTA


def payload_root(directory: Path) -> Path:
    """Descend into a lone wrapper folder, as zip tools commonly add one."""
    entries = _relevant_entries(directory)
    if len(entries) == 1 and entries[0].is_dir():
        logger.debug("descending into single subdirectory %s", entries[0])
        return entries[0]
    return directory


def base_model_name(declared: str) -> str | None:
    """Collapse a declared base model path or repo id to its last segment."""
    segments = [segment for segment in declared.replace("\\", "/").split("/") if segment.strip()]
    if not segments:
        return None
    return segments[-1].strip()


def detect(extracted_dir: Path) -> DetectedModelType:
    """Inspect an extracted tree and report whether it needs a base model."""
    root = payload_root(extracted_dir)
    logger.info("detecting model type in %s", root)

    adapter_config = root / ADAPTER_CONFIG_FILE
    if adapter_config.is_file():
        logger.info("found %s; treating %s as an adapter", ADAPTER_CONFIG_FILE, root)
        try:
            payload = json.loads(adapter_config.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.error("unable to read %s: %s", adapter_config, exc)
            return DetectedModelType.delta(root, None)

        declared = payload.get(BASE_MODEL_KEY) if isinstance(payload, dict) else None
        if not isinstance(declared, str):
            return DetectedModelType.delta(root, None)
        base_model_id = base_model_name(declared)
        if base_model_id is not None:
            logger.info("adapter requires base model %s", base_model_id)
        return DetectedModelType.delta(root, base_model_id)

    if (root / MODEL_CONFIG_FILE).is_file():
        logger.info("found %s without %s; full model", MODEL_CONFIG_FILE, ADAPTER_CONFIG_FILE)
        return DetectedModelType.full(root)

    logger.info("no model markers in %s; assuming a full model", root)
    return DetectedModelType.full(root)


def _relevant_entries(directory: Path) -> list[Path]:
    try:
        children = sorted(directory.iterdir())
    except OSError:
        return []
    return [
        child
        for child in children
        if child.name not in _IGNORED_ENTRIES and not child.name.startswith(".")
    ]
