"""Background import pipeline from an assembled archive to a runtime model."""

from __future__ import annotations

import asyncio
import enum
import logging
from pathlib import Path

from modelferry.core import modelfile
from modelferry.core.base_models import BaseModelResolver
from modelferry.core.detect import DetectedModelType, detect
from modelferry.core.errors import ModelImportError, UnresolvedBaseModel
from modelferry.core.extract import ArchiveExtractor
from modelferry.core.storage import FerryPaths, remove_path

from .records import ModelRecord, ModelRecordStore, ModelStatus
from .runtime import RuntimeClient

logger = logging.getLogger(__name__)


class ImportStage(str, enum.Enum):
    EXTRACT = "extract"
    DETECT = "detect"
    RESOLVE = "resolve"
    BUILD = "build"
    CREATE = "create"
    FINALIZE = "finalize"


class ImportOrchestrator:
    """Run imports as detached tasks and keep the record status consistent.

    The record stays ``importing`` for the whole pipeline; sub-stages are
    only visible in the log. Failures at any stage mark the record
    ``failed`` and remove the extraction and Modelfile directories. Cached
    base models are never removed here because other imports share them.
    """

    def __init__(
        self,
        *,
        paths: FerryPaths,
        store: ModelRecordStore,
        extractor: ArchiveExtractor,
        resolver: BaseModelResolver,
        runtime: RuntimeClient,
    ) -> None:
        self._paths = paths
        self._store = store
        self._extractor = extractor
        self._resolver = resolver
        self._runtime = runtime
        self._tasks: dict[str, asyncio.Task[ModelRecord | None]] = {}

    @property
    def store(self) -> ModelRecordStore:
        return self._store

    def is_running(self, model_id: str) -> bool:
        task = self._tasks.get(model_id)
        return task is not None and not task.done()

    def in_flight(self) -> list[str]:
        return sorted(model_id for model_id, task in self._tasks.items() if not task.done())

    def submit(self, model_id: str) -> asyncio.Task[ModelRecord | None]:
        """Start ``run`` for ``model_id`` without waiting for it."""
        if self.is_running(model_id):
            return self._tasks[model_id]
        task = asyncio.create_task(self.run(model_id), name=f"import-{model_id}")
        self._tasks[model_id] = task
        task.add_done_callback(lambda done, key=model_id: self._forget(key, done))
        return task

    async def wait_all(self) -> None:
        """Wait for in-flight imports; used on shutdown and in tests."""
        pending = [task for task in self._tasks.values() if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def retry(self, model_id: str) -> asyncio.Task[ModelRecord | None]:
        """Re-run a failed import from its stored archive."""
        record = self._store.get(model_id)
        if record is None:
            raise KeyError(model_id)
        if record.status is not ModelStatus.FAILED:
            raise ValueError(
                f"model {model_id!r} is {record.status.value}; only failed imports can be retried"
            )
        if not self._paths.archive_path(model_id).is_file():
            raise FileNotFoundError(f"archive for model {model_id!r} is no longer available")
        self._store.set_status(model_id, ModelStatus.IMPORTING)
        return self.submit(model_id)

    async def run(self, model_id: str) -> ModelRecord | None:
        """Import one model end to end; never raises for pipeline failures."""
        record = self._store.get(model_id)
        if record is None:
            logger.error("import %s: no model record", model_id)
            return None

        archive = self._paths.archive_path(model_id)
        extract_dir = self._paths.extract_dir(model_id)
        modelfile_dir = self._paths.modelfile_dir(model_id)
        stage = ImportStage.EXTRACT
        logger.info("import %s: starting for %s (alias %s)", model_id, record.name, record.alias)

        try:
            remove_path(extract_dir)
            remove_path(modelfile_dir)
            logger.info("import %s: extracting %s -> %s", model_id, archive, extract_dir)
            await self._extractor.extract(archive, extract_dir)

            stage = ImportStage.DETECT
            model_type = detect(extract_dir)
            logger.info("import %s: detected %s model", model_id, model_type.kind.value)

            stage = ImportStage.RESOLVE
            model_path, adapter_path = await self._resolve_paths(model_id, model_type, extract_dir)

            stage = ImportStage.BUILD
            modelfile_path = modelfile.build(model_type, model_path, adapter_path, modelfile_dir)

            stage = ImportStage.CREATE
            await self._runtime.create(record.alias, modelfile_path)

            stage = ImportStage.FINALIZE
            updated = self._store.set_status(model_id, ModelStatus.READY)
        except Exception as exc:  # noqa: BLE001
            if stage is ImportStage.FINALIZE:
                await self._unregister(model_id, record.alias)
            return self._fail(model_id, stage, exc, extract_dir, modelfile_dir)

        remove_path(modelfile_dir)
        logger.info("import %s: %s is ready", model_id, record.alias)
        return updated

    async def remove(self, model_id: str) -> bool:
        """Delete a model from the runtime, disk and the record store."""
        record = self._store.get(model_id)
        if record is None:
            return False
        if self.is_running(model_id):
            raise ValueError(f"model {model_id!r} is still importing")

        await self._runtime.delete(record.alias)
        for path in (
            self._paths.extract_dir(model_id),
            self._paths.modelfile_dir(model_id),
            self._paths.archive_path(model_id),
        ):
            remove_path(path)
        self._store.delete(model_id)
        logger.info("removed model %s (%s)", model_id, record.alias)
        return True

    async def _resolve_paths(
        self,
        model_id: str,
        model_type: DetectedModelType,
        extract_dir: Path,
    ) -> tuple[Path, Path | None]:
        if not model_type.requires_base_model:
            return extract_dir, None
        if not model_type.base_model_id:
            raise UnresolvedBaseModel()
        logger.info("import %s: resolving base model %s", model_id, model_type.base_model_id)
        base_path = await self._resolver.resolve(model_type.base_model_id)
        return base_path, model_type.root

    async def _unregister(self, model_id: str, alias: str) -> None:
        """Remove a runtime model whose record could not be marked ready."""
        try:
            await self._runtime.delete(alias)
        except Exception as exc:  # noqa: BLE001
            logger.error("import %s: unable to remove runtime model %s: %s", model_id, alias, exc)
        else:
            logger.info("import %s: removed runtime model %s after failure", model_id, alias)

    def _fail(
        self,
        model_id: str,
        stage: ImportStage,
        exc: Exception,
        extract_dir: Path,
        modelfile_dir: Path,
    ) -> ModelRecord | None:
        reason = _failure_reason(exc)
        logger.error("import %s failed during %s: %s", model_id, stage.value, reason)
        remove_path(extract_dir)
        remove_path(modelfile_dir)
        try:
            return self._store.set_status(
                model_id,
                ModelStatus.FAILED,
                error=f"{stage.value}: {reason}",
            )
        except Exception as store_exc:  # noqa: BLE001
            logger.error("import %s: unable to record failure: %s", model_id, store_exc)
            return None

    def _forget(self, model_id: str, task: asyncio.Task[ModelRecord | None]) -> None:
        if self._tasks.get(model_id) is task:
            self._tasks.pop(model_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error("import %s task crashed: %s", model_id, task.exception())


def _failure_reason(exc: Exception) -> str:
    if isinstance(exc, ModelImportError):
        return exc.message
    message = str(exc).strip()
    return message or exc.__class__.__name__
