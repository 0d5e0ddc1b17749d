"""Upload assembly, extraction, detection and Modelfile helpers for modelferry."""

from .base_models import BaseModelResolver
from .chunks import ChunkAssembler, UploadSession
from .detect import DetectedModelType, ModelKind, detect
from .errors import (
    AliasConflict,
    DownloadFailed,
    ExtractionFailed,
    MissingChunk,
    ModelfileError,
    ModelImportError,
    RuntimeInvocationFailed,
    RuntimeTimeout,
    UnknownSession,
    UnresolvedBaseModel,
)
from .extract import ArchiveExtractor, ExtractionAttempt, ExtractionStrategy

__all__ = [
    "AliasConflict",
    "ArchiveExtractor",
    "BaseModelResolver",
    "ChunkAssembler",
    "DetectedModelType",
    "DownloadFailed",
    "ExtractionAttempt",
    "ExtractionFailed",
    "ExtractionStrategy",
    "MissingChunk",
    "ModelImportError",
    "ModelKind",
    "ModelfileError",
    "RuntimeInvocationFailed",
    "RuntimeTimeout",
    "UnknownSession",
    "UnresolvedBaseModel",
    "UploadSession",
    "detect",
]
