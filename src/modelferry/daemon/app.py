"""FastAPI application for chunked uploads and model import status."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from importlib import metadata
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr

from modelferry.core.base_models import BaseModelResolver
from modelferry.core.chunks import ChunkAssembler
from modelferry.core.config import ImportSettings, load_config, resolve_import_settings
from modelferry.core.errors import (
    AliasConflict,
    MissingChunk,
    RuntimeInvocationFailed,
    UnknownSession,
)
from modelferry.core.extract import ArchiveExtractor
from modelferry.core.storage import FerryPaths

from .importer import ImportOrchestrator
from .records import ModelRecord, ModelRecordStore, derive_alias
from .runtime import RuntimeClient

logger = logging.getLogger(__name__)


class UploadStartRequest(BaseModel):
    """Request body announcing a chunked upload."""

    model_config = ConfigDict(
        extra="forbid",
        strict=True,
        populate_by_name=True,
        protected_namespaces=(),
    )

    file_name: StrictStr = Field(alias="fileName", min_length=1)
    file_size: StrictInt = Field(alias="fileSize", ge=0)
    model_name: StrictStr = Field(alias="modelName", min_length=1)


class UploadCompleteRequest(BaseModel):
    """Request body closing a chunked upload and starting the import."""

    model_config = ConfigDict(
        extra="forbid",
        strict=True,
        populate_by_name=True,
        protected_namespaces=(),
    )

    total_chunks: StrictInt = Field(alias="totalChunks", gt=0)
    model_name: StrictStr | None = Field(default=None, alias="modelName", min_length=1)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    app.state.started_at = datetime.now(UTC)
    _sweep_sessions(app)
    yield
    in_flight = _orchestrator(app).in_flight()
    if in_flight:
        logger.warning("shutting down with %d import(s) still running", len(in_flight))


def create_app(
    *,
    paths: FerryPaths | None = None,
    settings: ImportSettings | None = None,
    runtime: RuntimeClient | None = None,
    resolver: BaseModelResolver | None = None,
    extractor: ArchiveExtractor | None = None,
) -> FastAPI:
    """Create a configured FastAPI daemon app."""
    resolved_paths = paths or FerryPaths.default()
    resolved_settings = settings or resolve_import_settings(
        load_config(resolved_paths),
        env=os.environ,
    )
    resolved_extractor = extractor or ArchiveExtractor()
    resolved_runtime = runtime or RuntimeClient(
        resolved_settings.runtime_command,
        create_timeout=resolved_settings.create_timeout_seconds,
        delete_timeout=resolved_settings.delete_timeout_seconds,
    )
    resolved_resolver = resolver or BaseModelResolver(
        resolved_paths.base_models_dir,
        url_template=resolved_settings.base_model_url_template,
        extractor=resolved_extractor,
        timeout_seconds=resolved_settings.download_timeout_seconds,
    )
    store = ModelRecordStore(db_path=resolved_paths.database_path)

    package_version = _resolve_package_version()
    app = FastAPI(title="modelferry daemon", version=package_version, lifespan=_lifespan)
    app.state.paths = resolved_paths
    app.state.settings = resolved_settings
    app.state.store = store
    app.state.resolver = resolved_resolver
    app.state.assembler = ChunkAssembler(
        resolved_paths.staging_dir,
        flush_every=resolved_settings.flush_every_chunks,
    )
    app.state.orchestrator = ImportOrchestrator(
        paths=resolved_paths,
        store=store,
        extractor=resolved_extractor,
        resolver=resolved_resolver,
        runtime=resolved_runtime,
    )
    app.state.pending_aliases = set()
    app.state.started_at = datetime.now(UTC)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(
        _request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": exc.errors()})

    @app.get("/api/version")
    def version() -> dict[str, str]:
        return {"version": package_version}

    @app.get("/v1/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/uploads/start")
    def start_upload(payload: UploadStartRequest) -> dict[str, Any]:
        _sweep_sessions(app)
        _require_alias_available(app, payload.model_name)
        session_id = _assembler(app).start_session(
            payload.file_name,
            payload.file_size,
            model_name=payload.model_name,
        )
        return {"sessionId": session_id, "message": "ready for chunks"}

    @app.put("/api/uploads/{session_id}/chunks/{index}")
    async def upload_chunk(
        session_id: str,
        index: int,
        request: Request,
        total_chunks: int | None = Query(default=None, alias="totalChunks", gt=0),
    ) -> dict[str, Any]:
        data = await request.body()
        try:
            size = await asyncio.to_thread(
                _assembler(app).store_chunk,
                session_id,
                index,
                data,
                total_chunks=total_chunks,
            )
        except UnknownSession as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "success": True,
            "chunkIndex": index,
            "totalChunks": total_chunks,
            "size": size,
        }

    @app.post("/api/uploads/{session_id}/complete", status_code=202)
    async def complete_upload(session_id: str, payload: UploadCompleteRequest) -> dict[str, Any]:
        assembler = _assembler(app)
        try:
            session = assembler.get_session(session_id)
        except UnknownSession as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

        model_name = payload.model_name or session.model_name
        if not model_name:
            raise HTTPException(status_code=400, detail="modelName is required")
        alias = derive_alias(model_name)
        _require_alias_available(app, model_name)
        # Claimed before the first await and released once the record exists.
        pending: set[str] = app.state.pending_aliases
        pending.add(alias)

        paths: FerryPaths = app.state.paths
        model_id = str(uuid.uuid4())
        destination = paths.archive_path(model_id)
        try:
            try:
                size = await asyncio.to_thread(
                    assembler.assemble,
                    session_id,
                    payload.total_chunks,
                    destination,
                )
            except UnknownSession as exc:
                raise HTTPException(status_code=404, detail=str(exc)) from exc
            except MissingChunk as exc:
                raise HTTPException(
                    status_code=400,
                    detail={"message": str(exc), "missing": exc.missing},
                ) from exc
            record = _store(app).create(name=model_name, size=size, model_id=model_id, alias=alias)
        finally:
            pending.discard(alias)

        _orchestrator(app).submit(model_id)
        logger.info("upload %s assembled as model %s; import started", session_id, model_id)
        return {
            "modelId": record.id,
            "alias": record.alias,
            "path": str(destination),
            "size": size,
            "status": record.status.value,
        }

    @app.get("/api/models")
    def list_models() -> dict[str, list[dict[str, Any]]]:
        return {"models": [record.to_json() for record in _store(app).list_all()]}

    @app.get("/api/models/{model_id}")
    def show_model(model_id: str) -> dict[str, Any]:
        return _require_record(app, model_id).to_json()

    @app.post("/api/models/{model_id}/retry", status_code=202)
    async def retry_model(model_id: str) -> dict[str, Any]:
        try:
            _orchestrator(app).retry(model_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=f"model {model_id!r} not found") from exc
        except (ValueError, FileNotFoundError) as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return _require_record(app, model_id).to_json()

    @app.delete("/api/models/{model_id}")
    async def delete_model(model_id: str) -> dict[str, Any]:
        record = _require_record(app, model_id)
        try:
            await _orchestrator(app).remove(model_id)
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except RuntimeInvocationFailed as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"deleted": True, "id": record.id, "alias": record.alias}

    @app.get("/api/base-models")
    def list_base_models() -> dict[str, list[str]]:
        resolver: BaseModelResolver = app.state.resolver
        return {"baseModels": resolver.list_cached()}

    return app


def _assembler(app: FastAPI) -> ChunkAssembler:
    return app.state.assembler


def _store(app: FastAPI) -> ModelRecordStore:
    return app.state.store


def _orchestrator(app: FastAPI) -> ImportOrchestrator:
    return app.state.orchestrator


def _require_record(app: FastAPI, model_id: str) -> ModelRecord:
    record = _store(app).get(model_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"model {model_id!r} not found")
    return record


def _require_alias_available(app: FastAPI, model_name: str) -> None:
    alias = derive_alias(model_name)
    existing = _store(app).find_by_alias(alias)
    if existing:
        exc = AliasConflict(alias, existing[0].id)
        raise HTTPException(status_code=409, detail=str(exc))
    if alias in app.state.pending_aliases:
        exc = AliasConflict(alias, None)
        raise HTTPException(status_code=409, detail=str(exc))


def _sweep_sessions(app: FastAPI) -> None:
    settings: ImportSettings = app.state.settings
    if settings.session_ttl_seconds is None:
        return
    _assembler(app).sweep_expired(settings.session_ttl_seconds)


def _resolve_package_version() -> str:
    try:
        return metadata.version("modelferry")
    except metadata.PackageNotFoundError:
        return "0.0.0"
