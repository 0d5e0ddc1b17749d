"""Tests for tolerant archive validation and strategy fallback."""

from __future__ import annotations

import asyncio
import logging
import sys
import zipfile
from pathlib import Path

import pytest

from modelferry.core.errors import ExtractionFailed
from modelferry.core.extract import (
    ArchiveExtractor,
    CommandStrategy,
    ExtractionAttempt,
    ExtractionStrategy,
    PythonZipStrategy,
    SevenZipStrategy,
    UnzipStrategy,
)


def _write_zip(path: Path, members: dict[str, bytes]) -> Path:
    with zipfile.ZipFile(path, "w") as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return path


class _FailingStrategy(ExtractionStrategy):
    name = "always-fails"

    def __init__(self) -> None:
        self.calls = 0

    async def run(self, archive: Path, destination: Path) -> ExtractionAttempt:
        self.calls += 1
        return ExtractionAttempt(self.name, ok=False, detail="bad central directory")


class _EmptySuccessStrategy(ExtractionStrategy):
    name = "claims-success"

    async def run(self, archive: Path, destination: Path) -> ExtractionAttempt:
        return ExtractionAttempt(self.name, ok=True)


class _UnavailableStrategy(ExtractionStrategy):
    name = "missing-tool"

    def available(self) -> bool:
        return False

    async def run(self, archive: Path, destination: Path) -> ExtractionAttempt:
        raise AssertionError("unavailable strategies must not run")


class _SlowCommandStrategy(CommandStrategy):
    name = "slow-tool"
    executables = (sys.executable,)

    def command(self, executable: str, archive: Path, destination: Path) -> list[str]:
        return [executable, "-c", "import time; time.sleep(30)"]


@pytest.mark.asyncio
async def test_extract_falls_back_until_a_strategy_succeeds(tmp_path: Path) -> None:
    archive = _write_zip(tmp_path / "model.zip", {"config.json": b"{}", "w.safetensors": b"x"})
    failing = _FailingStrategy()
    extractor = ArchiveExtractor(
        [_UnavailableStrategy(), failing, _EmptySuccessStrategy(), PythonZipStrategy()]
    )

    destination = tmp_path / "out"
    attempts = await extractor.extract(archive, destination)

    assert failing.calls == 1
    assert [attempt.strategy for attempt in attempts] == [
        "missing-tool",
        "always-fails",
        "claims-success",
        "python-zipfile",
    ]
    assert attempts[0].skipped is True
    assert attempts[2].ok is False
    assert attempts[-1].ok is True
    assert (destination / "config.json").read_bytes() == b"{}"
    assert (destination / "w.safetensors").read_bytes() == b"x"


@pytest.mark.asyncio
async def test_extract_raises_with_every_attempt_when_all_fail(tmp_path: Path) -> None:
    archive = _write_zip(tmp_path / "model.zip", {"a.txt": b"a"})
    extractor = ArchiveExtractor([_FailingStrategy(), _EmptySuccessStrategy()])

    with pytest.raises(ExtractionFailed) as exc_info:
        await extractor.extract(archive, tmp_path / "out")

    error = exc_info.value
    assert [attempt.strategy for attempt in error.attempts] == ["always-fails", "claims-success"]
    assert "always-fails: bad central directory" in str(error)
    assert error.stage == "extract"


@pytest.mark.asyncio
async def test_validate_rejects_files_without_zip_signature(tmp_path: Path) -> None:
    archive = tmp_path / "notes.zip"
    archive.write_bytes(b"just some text, not an archive")
    extractor = ArchiveExtractor([PythonZipStrategy()])

    with pytest.raises(ExtractionFailed) as exc_info:
        await extractor.extract(archive, tmp_path / "out")

    assert "unrecognized file signature" in str(exc_info.value)
    assert not (tmp_path / "out").exists()


@pytest.mark.asyncio
async def test_validate_rejects_missing_archive(tmp_path: Path) -> None:
    extractor = ArchiveExtractor([PythonZipStrategy()])

    with pytest.raises(ExtractionFailed, match="does not exist"):
        await extractor.validate(tmp_path / "missing.zip")


@pytest.mark.asyncio
async def test_validate_accepts_zip_signature_without_central_directory(
    monkeypatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setattr("modelferry.core.extract.shutil.which", lambda _name: None)
    archive = tmp_path / "truncated.zip"
    archive.write_bytes(b"PK\x03\x04" + b"\x00" * 64)

    result = await ArchiveExtractor([PythonZipStrategy()]).validate(archive)

    assert result == "signature"


@pytest.mark.asyncio
async def test_python_zip_strategy_skips_path_traversal_members(
    caplog,
    tmp_path: Path,
) -> None:
    archive = _write_zip(
        tmp_path / "evil.zip",
        {"../escape.txt": b"nope", "model/config.json": b"{}"},
    )
    destination = tmp_path / "out"
    destination.mkdir()

    with caplog.at_level(logging.WARNING, logger="modelferry.core.extract"):
        attempt = await PythonZipStrategy().run(archive, destination)

    assert attempt.ok is True
    assert "skipped unsafe member" in attempt.detail
    assert "extracted 1 of 2 members" in caplog.text
    assert "skipped unsafe member" in caplog.text
    assert (destination / "model" / "config.json").is_file()
    assert not (tmp_path / "escape.txt").exists()


@pytest.mark.asyncio
async def test_extract_is_repeatable_on_a_valid_archive(tmp_path: Path) -> None:
    archive = _write_zip(tmp_path / "model.zip", {"nested/config.json": b"{}"})
    extractor = ArchiveExtractor([PythonZipStrategy()])

    first = tmp_path / "first"
    second = tmp_path / "second"
    await extractor.extract(archive, first)
    await extractor.extract(archive, second)

    listing = sorted(path.relative_to(first).as_posix() for path in first.rglob("*"))
    assert listing == sorted(path.relative_to(second).as_posix() for path in second.rglob("*"))


def test_command_strategies_build_expected_argv(tmp_path: Path) -> None:
    archive = tmp_path / "a.zip"
    destination = tmp_path / "out"

    assert SevenZipStrategy().command("7z", archive, destination) == [
        "7z",
        "x",
        "-y",
        f"-o{destination}",
        str(archive),
    ]
    assert UnzipStrategy().command("unzip", archive, destination) == [
        "unzip",
        "-o",
        "-q",
        str(archive),
        "-d",
        str(destination),
    ]


@pytest.mark.asyncio
async def test_cancelled_command_strategy_kills_its_child(monkeypatch, tmp_path: Path) -> None:
    archive = _write_zip(tmp_path / "model.zip", {"config.json": b"{}"})
    spawned: list[tuple[tuple[str, ...], asyncio.subprocess.Process]] = []
    real_spawn = asyncio.create_subprocess_exec

    async def _spawn(*args, **kwargs):
        process = await real_spawn(*args, **kwargs)
        spawned.append((args, process))
        return process

    monkeypatch.setattr("modelferry.core.processes.asyncio.create_subprocess_exec", _spawn)
    extractor = ArchiveExtractor([_SlowCommandStrategy()])

    with pytest.raises(TimeoutError):
        await asyncio.wait_for(extractor.extract(archive, tmp_path / "out"), timeout=1.0)

    slow = [process for args, process in spawned if args[0] == sys.executable]
    assert len(slow) == 1
    assert slow[0].returncode is not None


@pytest.mark.asyncio
async def test_command_strategy_reports_missing_executable_as_skipped(
    monkeypatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setattr("modelferry.core.extract.shutil.which", lambda _name: None)

    strategy = UnzipStrategy()
    attempt = await strategy.run(tmp_path / "a.zip", tmp_path / "out")

    assert strategy.available() is False
    assert attempt.skipped is True
    assert attempt.ok is False
