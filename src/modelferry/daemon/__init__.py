"""HTTP daemon and background import pipeline for modelferry."""

from .app import create_app
from .importer import ImportOrchestrator, ImportStage
from .records import ModelRecord, ModelRecordStore, ModelStatus, derive_alias
from .runtime import RuntimeClient

__all__ = [
    "ImportOrchestrator",
    "ImportStage",
    "ModelRecord",
    "ModelRecordStore",
    "ModelStatus",
    "RuntimeClient",
    "create_app",
    "derive_alias",
]
