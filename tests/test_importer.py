"""Tests for the background import pipeline."""

from __future__ import annotations

import io
import json
import sqlite3
import zipfile
from pathlib import Path

import httpx
import pytest

from modelferry.core.base_models import BaseModelResolver
from modelferry.core.errors import RuntimeInvocationFailed
from modelferry.core.extract import ArchiveExtractor, PythonZipStrategy
from modelferry.core.modelfile import parse_modelfile
from modelferry.core.storage import FerryPaths
from modelferry.daemon.importer import ImportOrchestrator
from modelferry.daemon.records import ModelRecordStore, ModelStatus


class _FakeRuntime:
    def __init__(self, *, fail_create: bool = False, fail_delete: bool = False) -> None:
        self.fail_create = fail_create
        self.fail_delete = fail_delete
        self.created: list[tuple[str, str]] = []
        self.deleted: list[str] = []

    async def create(self, alias: str, modelfile_path: Path) -> None:
        if self.fail_create:
            raise RuntimeInvocationFailed(
                ["ollama", "create", alias],
                returncode=1,
                stderr="Error: unsupported architecture",
            )
        self.created.append((alias, modelfile_path.read_text(encoding="utf-8")))

    async def delete(self, alias: str) -> bool:
        if self.fail_delete:
            raise RuntimeInvocationFailed(["ollama", "rm", alias], returncode=1, stderr="busy")
        self.deleted.append(alias)
        return True


def _zip_bytes(members: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def _orchestrator(
    tmp_path: Path,
    runtime: _FakeRuntime,
    *,
    base_model_zip: bytes | None = None,
) -> tuple[ImportOrchestrator, FerryPaths, list[str]]:
    paths = FerryPaths(base_dir=tmp_path / ".modelferry")
    extractor = ArchiveExtractor([PythonZipStrategy()])
    downloads: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        downloads.append(str(request.url))
        if base_model_zip is None:
            return httpx.Response(404)
        return httpx.Response(200, content=base_model_zip)

    resolver = BaseModelResolver(
        paths.base_models_dir,
        url_template="https://models.example/{name}.zip",
        extractor=extractor,
        transport=httpx.MockTransport(_handler),
    )
    orchestrator = ImportOrchestrator(
        paths=paths,
        store=ModelRecordStore(db_path=paths.database_path),
        extractor=extractor,
        resolver=resolver,
        runtime=runtime,
    )
    return orchestrator, paths, downloads


def _stage_upload(paths: FerryPaths, store: ModelRecordStore, name: str, data: bytes) -> str:
    record = store.create(name=name, size=len(data))
    archive = paths.archive_path(record.id)
    archive.parent.mkdir(parents=True, exist_ok=True)
    archive.write_bytes(data)
    return record.id


@pytest.mark.asyncio
async def test_full_model_import_becomes_ready(tmp_path: Path) -> None:
    runtime = _FakeRuntime()
    orchestrator, paths, downloads = _orchestrator(tmp_path, runtime)
    model_id = _stage_upload(
        paths,
        orchestrator.store,
        "Tiny Llama",
        _zip_bytes({"config.json": b"{}", "model.safetensors": b"weights"}),
    )

    record = await orchestrator.run(model_id)

    assert record is not None
    assert record.status is ModelStatus.READY
    assert record.error is None
    assert downloads == []
    assert len(runtime.created) == 1
    alias, content = runtime.created[0]
    assert alias == "tiny-llama"
    assert parse_modelfile(content) == {"FROM": str(paths.extract_dir(model_id))}
    assert not paths.modelfile_dir(model_id).exists()
    assert paths.extract_dir(model_id).is_dir()


@pytest.mark.asyncio
async def test_adapter_import_resolves_base_model_once(tmp_path: Path) -> None:
    runtime = _FakeRuntime()
    base_zip = _zip_bytes({"config.json": b'{"arch": "llama"}', "model.safetensors": b"w"})
    orchestrator, paths, downloads = _orchestrator(tmp_path, runtime, base_model_zip=base_zip)
    adapter_zip = _zip_bytes(
        {
            "lora/adapter_config.json": json.dumps(
                {"base_model_name_or_path": "org/base-1b"}
            ).encode(),
            "lora/adapter_model.safetensors": b"delta",
        }
    )

    first_id = _stage_upload(paths, orchestrator.store, "Lora One", adapter_zip)
    second_id = _stage_upload(paths, orchestrator.store, "Lora Two", adapter_zip)
    first = await orchestrator.run(first_id)
    second = await orchestrator.run(second_id)

    assert first is not None and first.status is ModelStatus.READY
    assert second is not None and second.status is ModelStatus.READY
    assert downloads == ["https://models.example/base-1b.zip"]

    adapter_dir = paths.extract_dir(first_id) / "lora"
    assert parse_modelfile(runtime.created[0][1]) == {
        "FROM": str(paths.base_models_dir / "base-1b"),
        "ADAPTER": str(adapter_dir),
    }
    assert (adapter_dir / "config.json").is_file()


@pytest.mark.asyncio
async def test_adapter_without_base_model_fails_and_cleans_up(tmp_path: Path) -> None:
    runtime = _FakeRuntime()
    orchestrator, paths, downloads = _orchestrator(tmp_path, runtime)
    model_id = _stage_upload(
        paths,
        orchestrator.store,
        "Orphan Adapter",
        _zip_bytes({"adapter_config.json": b'{"r": 8}', "adapter_model.bin": b"x"}),
    )

    record = await orchestrator.run(model_id)

    assert record is not None
    assert record.status is ModelStatus.FAILED
    assert record.error is not None
    assert record.error.startswith("resolve:")
    assert "no base model is declared" in record.error
    assert runtime.created == []
    assert downloads == []
    assert not paths.extract_dir(model_id).exists()
    assert not paths.modelfile_dir(model_id).exists()
    assert paths.archive_path(model_id).is_file()


@pytest.mark.asyncio
async def test_base_model_download_failure_marks_record_failed(tmp_path: Path) -> None:
    runtime = _FakeRuntime()
    orchestrator, paths, _downloads = _orchestrator(tmp_path, runtime, base_model_zip=None)
    model_id = _stage_upload(
        paths,
        orchestrator.store,
        "Needs Base",
        _zip_bytes({"adapter_config.json": b'{"base_model_name_or_path": "base-9b"}'}),
    )

    record = await orchestrator.run(model_id)

    assert record is not None
    assert record.status is ModelStatus.FAILED
    assert "HTTP 404" in (record.error or "")
    assert not (paths.base_models_dir / "base-9b").exists()
    assert not paths.extract_dir(model_id).exists()


@pytest.mark.asyncio
async def test_corrupt_archive_fails_during_extract(tmp_path: Path) -> None:
    runtime = _FakeRuntime()
    orchestrator, paths, _downloads = _orchestrator(tmp_path, runtime)
    model_id = _stage_upload(paths, orchestrator.store, "Broken", b"definitely not a zip")

    record = await orchestrator.run(model_id)

    assert record is not None
    assert record.status is ModelStatus.FAILED
    assert (record.error or "").startswith("extract:")
    assert not paths.extract_dir(model_id).exists()


@pytest.mark.asyncio
async def test_runtime_failure_removes_modelfile_and_extract_dirs(tmp_path: Path) -> None:
    runtime = _FakeRuntime(fail_create=True)
    orchestrator, paths, _downloads = _orchestrator(tmp_path, runtime)
    model_id = _stage_upload(
        paths,
        orchestrator.store,
        "Bad Arch",
        _zip_bytes({"config.json": b"{}", "model.safetensors": b"w"}),
    )

    record = await orchestrator.run(model_id)

    assert record is not None
    assert record.status is ModelStatus.FAILED
    assert (record.error or "").startswith("create:")
    assert "unsupported architecture" in (record.error or "")
    assert not paths.extract_dir(model_id).exists()
    assert not paths.modelfile_dir(model_id).exists()


@pytest.mark.asyncio
async def test_finalize_failure_unregisters_runtime_model(monkeypatch, tmp_path: Path) -> None:
    runtime = _FakeRuntime()
    orchestrator, paths, _downloads = _orchestrator(tmp_path, runtime)
    model_id = _stage_upload(
        paths,
        orchestrator.store,
        "Half Done",
        _zip_bytes({"config.json": b"{}", "model.safetensors": b"weights"}),
    )
    store = orchestrator.store
    real_set_status = store.set_status

    def _set_status(model_id: str, status: ModelStatus, *, error: str | None = None):
        if status is ModelStatus.READY:
            raise sqlite3.OperationalError("database is locked")
        return real_set_status(model_id, status, error=error)

    monkeypatch.setattr(store, "set_status", _set_status)

    record = await orchestrator.run(model_id)

    assert record is not None
    assert record.status is ModelStatus.FAILED
    assert record.error == "finalize: database is locked"
    assert [alias for alias, _content in runtime.created] == ["half-done"]
    assert runtime.deleted == ["half-done"]
    assert not paths.extract_dir(model_id).exists()


@pytest.mark.asyncio
async def test_retry_reruns_failed_import_from_stored_archive(tmp_path: Path) -> None:
    runtime = _FakeRuntime(fail_create=True)
    orchestrator, paths, _downloads = _orchestrator(tmp_path, runtime)
    model_id = _stage_upload(
        paths,
        orchestrator.store,
        "Flaky",
        _zip_bytes({"config.json": b"{}", "model.safetensors": b"w"}),
    )
    await orchestrator.run(model_id)

    runtime.fail_create = False
    task = orchestrator.retry(model_id)
    assert orchestrator.store.get(model_id).status is ModelStatus.IMPORTING
    record = await task

    assert record is not None
    assert record.status is ModelStatus.READY
    assert record.error is None


@pytest.mark.asyncio
async def test_retry_rejects_records_that_are_not_failed(tmp_path: Path) -> None:
    runtime = _FakeRuntime()
    orchestrator, paths, _downloads = _orchestrator(tmp_path, runtime)
    model_id = _stage_upload(
        paths,
        orchestrator.store,
        "Fine",
        _zip_bytes({"config.json": b"{}", "model.safetensors": b"w"}),
    )
    await orchestrator.run(model_id)

    with pytest.raises(ValueError):
        orchestrator.retry(model_id)
    with pytest.raises(KeyError):
        orchestrator.retry("unknown")


@pytest.mark.asyncio
async def test_submit_runs_detached_until_wait_all(tmp_path: Path) -> None:
    runtime = _FakeRuntime()
    orchestrator, paths, _downloads = _orchestrator(tmp_path, runtime)
    model_id = _stage_upload(
        paths,
        orchestrator.store,
        "Background",
        _zip_bytes({"config.json": b"{}", "model.safetensors": b"w"}),
    )

    orchestrator.submit(model_id)
    assert orchestrator.is_running(model_id)
    await orchestrator.wait_all()

    assert orchestrator.store.get(model_id).status is ModelStatus.READY
    assert orchestrator.in_flight() == []


@pytest.mark.asyncio
async def test_remove_deletes_runtime_model_files_and_record(tmp_path: Path) -> None:
    runtime = _FakeRuntime()
    orchestrator, paths, _downloads = _orchestrator(tmp_path, runtime)
    model_id = _stage_upload(
        paths,
        orchestrator.store,
        "Doomed",
        _zip_bytes({"config.json": b"{}", "model.safetensors": b"w"}),
    )
    await orchestrator.run(model_id)

    assert await orchestrator.remove(model_id) is True

    assert runtime.deleted == ["doomed"]
    assert orchestrator.store.get(model_id) is None
    assert not paths.extract_dir(model_id).exists()
    assert not paths.archive_path(model_id).exists()
    assert await orchestrator.remove(model_id) is False


@pytest.mark.asyncio
async def test_remove_keeps_record_when_runtime_delete_fails(tmp_path: Path) -> None:
    runtime = _FakeRuntime(fail_delete=True)
    orchestrator, paths, _downloads = _orchestrator(tmp_path, runtime)
    model_id = _stage_upload(
        paths,
        orchestrator.store,
        "Sticky",
        _zip_bytes({"config.json": b"{}", "model.safetensors": b"w"}),
    )
    await orchestrator.run(model_id)

    with pytest.raises(RuntimeInvocationFailed):
        await orchestrator.remove(model_id)

    assert orchestrator.store.get(model_id) is not None
    assert paths.archive_path(model_id).is_file()
