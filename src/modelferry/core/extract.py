"""Tolerant zip extraction through an ordered list of strategies."""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
import zipfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .errors import ExtractionFailed
from .processes import run_command

logger = logging.getLogger(__name__)

ZIP_SIGNATURES = (b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08")
_DETAIL_LIMIT = 4000


@dataclass(frozen=True)
class ExtractionAttempt:
    """Outcome of one strategy against one archive."""

    strategy: str
    ok: bool
    detail: str = ""
    skipped: bool = False


class ExtractionStrategy:
    """One way of unpacking a zip-like archive."""

    name = "strategy"

    def available(self) -> bool:
        return True

    async def run(self, archive: Path, destination: Path) -> ExtractionAttempt:
        raise NotImplementedError


class CommandStrategy(ExtractionStrategy):
    """Strategy backed by an external extraction tool found on PATH."""

    executables: tuple[str, ...] = ()

    def executable(self) -> str | None:
        for candidate in self.executables:
            resolved = shutil.which(candidate)
            if resolved is not None:
                return resolved
        return None

    def available(self) -> bool:
        return self.executable() is not None

    def command(self, executable: str, archive: Path, destination: Path) -> list[str]:
        raise NotImplementedError

    async def run(self, archive: Path, destination: Path) -> ExtractionAttempt:
        executable = self.executable()
        if executable is None:
            return ExtractionAttempt(self.name, ok=False, detail="not installed", skipped=True)

        command = self.command(executable, archive, destination)
        try:
            result = await run_command(command)
        except OSError as exc:
            return ExtractionAttempt(self.name, ok=False, detail=str(exc))

        detail = (result.stderr.strip() or result.stdout.strip())[-_DETAIL_LIMIT:]
        if result.returncode != 0:
            return ExtractionAttempt(
                self.name,
                ok=False,
                detail=f"exit code {result.returncode}: {detail}",
            )
        return ExtractionAttempt(self.name, ok=True, detail=detail)


class DittoStrategy(CommandStrategy):
    """macOS ``ditto``, which opens many archives other tools reject."""

    name = "ditto"
    executables = ("ditto",)

    def available(self) -> bool:
        return sys.platform == "darwin" and super().available()

    def command(self, executable: str, archive: Path, destination: Path) -> list[str]:
        return [executable, "-x", "-k", str(archive), str(destination)]


class SevenZipStrategy(CommandStrategy):
    name = "7z"
    executables = ("7z", "7zz", "7za")

    def command(self, executable: str, archive: Path, destination: Path) -> list[str]:
        return [executable, "x", "-y", f"-o{destination}", str(archive)]


class UnzipStrategy(CommandStrategy):
    name = "unzip"
    executables = ("unzip",)

    def command(self, executable: str, archive: Path, destination: Path) -> list[str]:
        return [executable, "-o", "-q", str(archive), "-d", str(destination)]


class PythonZipStrategy(ExtractionStrategy):
    """In-process fallback that extracts member by member.

    A single unreadable member is reported instead of aborting the whole
    archive, and ZIP64 headers that strict tools reject are handled by
    :mod:`zipfile`.
    """

    name = "python-zipfile"

    async def run(self, archive: Path, destination: Path) -> ExtractionAttempt:
        return await asyncio.to_thread(self._extract, archive, destination)

    def _extract(self, archive: Path, destination: Path) -> ExtractionAttempt:
        try:
            with zipfile.ZipFile(archive) as handle:
                members = handle.infolist()
                extracted = 0
                problems: list[str] = []
                for member in members:
                    if not _is_safe_member(member.filename):
                        problems.append(f"skipped unsafe member {member.filename!r}")
                        continue
                    try:
                        handle.extract(member, destination)
                    except (zipfile.BadZipFile, OSError, NotImplementedError, EOFError) as exc:
                        problems.append(f"{member.filename}: {exc}")
                        continue
                    extracted += 1
        except (zipfile.BadZipFile, OSError, EOFError) as exc:
            return ExtractionAttempt(self.name, ok=False, detail=str(exc))

        detail = "; ".join(problems)[-_DETAIL_LIMIT:]
        if extracted == 0 and members:
            return ExtractionAttempt(self.name, ok=False, detail=detail or "no members extracted")
        if problems:
            logger.warning(
                "extracted %d of %d members from %s; %d skipped: %s",
                extracted,
                len(members),
                archive,
                len(problems),
                detail,
            )
        return ExtractionAttempt(self.name, ok=True, detail=detail)


def default_strategies() -> list[ExtractionStrategy]:
    """Return strategies ordered from most tolerant native tool to the in-process fallback."""
    return [DittoStrategy(), SevenZipStrategy(), UnzipStrategy(), PythonZipStrategy()]


class ArchiveExtractor:
    """Validate and unpack zip-like archives, falling back across strategies."""

    def __init__(self, strategies: Sequence[ExtractionStrategy] | None = None) -> None:
        self._strategies = list(strategies) if strategies is not None else default_strategies()
        if not self._strategies:
            raise ValueError("at least one extraction strategy is required")

    @property
    def strategies(self) -> list[ExtractionStrategy]:
        return list(self._strategies)

    async def validate(self, archive: Path) -> str:
        """Check the archive looks like a zip; return which check accepted it."""
        if not archive.is_file():
            raise ExtractionFailed(
                str(archive),
                [ExtractionAttempt("validate", ok=False, detail="archive file does not exist")],
            )

        size_mib = archive.stat().st_size / 1024**2
        logger.info("validating archive %s (%.2f MiB)", archive, size_mib)

        unzip = shutil.which("unzip")
        if unzip is not None:
            try:
                listing = await run_command([unzip, "-l", str(archive)])
            except OSError as exc:
                logger.warning("unable to list %s: %s", archive, exc)
            else:
                if listing.returncode == 0:
                    return "listing"
                logger.warning(
                    "strict listing of %s failed (exit %d): %s",
                    archive,
                    listing.returncode,
                    listing.stderr.strip()[-500:],
                )

        if await asyncio.to_thread(zipfile.is_zipfile, archive):
            return "central-directory"

        signature = _read_signature(archive)
        if signature.startswith(ZIP_SIGNATURES):
            logger.warning("%s has a zip signature but no readable index; trying anyway", archive)
            return "signature"

        raise ExtractionFailed(
            str(archive),
            [
                ExtractionAttempt(
                    "validate",
                    ok=False,
                    detail=f"unrecognized file signature {signature[:4]!r}",
                )
            ],
        )

    async def extract(self, archive: Path, destination: Path) -> list[ExtractionAttempt]:
        """Extract ``archive`` into ``destination`` using the first strategy that works."""
        await self.validate(archive)
        destination.mkdir(parents=True, exist_ok=True)
        logger.info("extracting %s -> %s", archive, destination)

        attempts: list[ExtractionAttempt] = []
        for strategy in self._strategies:
            if not strategy.available():
                attempts.append(
                    ExtractionAttempt(strategy.name, ok=False, detail="not available", skipped=True)
                )
                continue

            attempt = await strategy.run(archive, destination)
            if attempt.ok and not _has_entries(destination):
                attempt = ExtractionAttempt(
                    strategy.name,
                    ok=False,
                    detail=attempt.detail or "reported success but produced no files",
                )
            attempts.append(attempt)
            if attempt.ok:
                logger.info("extracted %s with %s", archive, strategy.name)
                return attempts
            if not attempt.skipped:
                logger.warning(
                    "extraction of %s with %s failed: %s",
                    archive,
                    strategy.name,
                    attempt.detail[-500:],
                )

        raise ExtractionFailed(str(archive), attempts)


def _read_signature(archive: Path) -> bytes:
    try:
        with archive.open("rb") as handle:
            return handle.read(8)
    except OSError:
        return b""


def _has_entries(directory: Path) -> bool:
    try:
        return any(directory.iterdir())
    except OSError:
        return False


def _is_safe_member(name: str) -> bool:
    normalized = name.replace("\\", "/")
    path = PurePosixPath(normalized)
    if path.is_absolute() or normalized.startswith("/"):
        return False
    return ".." not in path.parts
