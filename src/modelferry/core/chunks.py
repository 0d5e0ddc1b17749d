"""Chunked upload staging and streaming archive assembly."""

from __future__ import annotations

import logging
import shutil
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from .errors import MissingChunk, UnknownSession
from .storage import remove_path, validate_name

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_EVERY_CHUNKS = 10
_COPY_BLOCK_BYTES = 1024 * 1024
_CHUNK_PREFIX = "chunk_"


@dataclass
class UploadSession:
    """In-flight chunked upload staged under one directory."""

    session_id: str
    file_name: str
    declared_size: int
    staging_dir: Path
    model_name: str | None = None
    created_at: float = field(default_factory=time.time)
    received: set[int] = field(default_factory=set)

    def chunk_path(self, index: int) -> Path:
        return self.staging_dir / f"{_CHUNK_PREFIX}{index}"


class ChunkAssembler:
    """Persist ordered byte ranges per session and concatenate them on completion."""

    def __init__(
        self,
        staging_root: Path,
        *,
        flush_every: int = DEFAULT_FLUSH_EVERY_CHUNKS,
    ) -> None:
        if flush_every <= 0:
            raise ValueError("flush_every must be greater than zero")
        self._staging_root = staging_root
        self._flush_every = flush_every
        self._sessions: dict[str, UploadSession] = {}
        self._lock = threading.Lock()

    @property
    def staging_root(self) -> Path:
        return self._staging_root

    def start_session(
        self,
        file_name: str,
        declared_size: int,
        *,
        model_name: str | None = None,
    ) -> str:
        """Allocate a staging directory and return an opaque session token."""
        session_id = uuid.uuid4().hex
        staging_dir = self._staging_root / session_id
        staging_dir.mkdir(parents=True, exist_ok=True)
        session = UploadSession(
            session_id=session_id,
            file_name=file_name,
            declared_size=max(int(declared_size), 0),
            staging_dir=staging_dir,
            model_name=model_name,
        )
        with self._lock:
            self._sessions[session_id] = session

        logger.info(
            "started upload session %s for %s (%.2f GiB declared)",
            session_id,
            file_name,
            session.declared_size / 1024**3,
        )
        return session_id

    def get_session(self, session_id: str) -> UploadSession:
        """Return a tracked session, re-adopting a staging directory left by a restart."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                return session

            try:
                staging_dir = self._staging_root / validate_name(session_id)
            except ValueError as exc:
                raise UnknownSession(session_id) from exc
            if not staging_dir.is_dir():
                raise UnknownSession(session_id)

            session = UploadSession(
                session_id=session_id,
                file_name="",
                declared_size=0,
                staging_dir=staging_dir,
                created_at=staging_dir.stat().st_mtime,
                received=_indices_on_disk(staging_dir),
            )
            self._sessions[session_id] = session
            logger.info("re-adopted upload session %s from %s", session_id, staging_dir)
            return session

    def store_chunk(
        self,
        session_id: str,
        index: int,
        data: bytes,
        *,
        total_chunks: int | None = None,
    ) -> int:
        """Write one chunk; a repeated index silently replaces the earlier bytes."""
        if index < 0:
            raise ValueError(f"chunk index must be >= 0, got {index}")
        if total_chunks is not None and index >= total_chunks:
            raise ValueError(f"chunk index {index} is outside [0, {total_chunks})")

        session = self.get_session(session_id)
        chunk_path = session.chunk_path(index)
        chunk_path.write_bytes(data)
        with self._lock:
            session.received.add(index)

        logger.debug(
            "stored chunk %d%s for session %s (%.2f MiB)",
            index + 1,
            f"/{total_chunks}" if total_chunks is not None else "",
            session_id,
            len(data) / 1024**2,
        )
        return len(data)

    def assemble(self, session_id: str, total_chunks: int, destination: Path) -> int:
        """Concatenate chunks ``0..total_chunks-1`` into ``destination``.

        Chunks are streamed in fixed-size blocks so peak memory does not grow
        with archive size. The staging directory is removed only after a
        successful assembly.
        """
        if total_chunks <= 0:
            raise ValueError("total_chunks must be greater than zero")

        session = self.get_session(session_id)
        missing = [
            index for index in range(total_chunks) if not session.chunk_path(index).is_file()
        ]
        if missing:
            raise MissingChunk(session_id, missing)

        destination.parent.mkdir(parents=True, exist_ok=True)
        temp_path = destination.with_name(f"{destination.name}.tmp")
        logger.info("assembling %d chunks into %s", total_chunks, destination)

        total_bytes = 0
        try:
            with temp_path.open("wb") as output:
                for index in range(total_chunks):
                    with session.chunk_path(index).open("rb") as chunk_file:
                        shutil.copyfileobj(chunk_file, output, _COPY_BLOCK_BYTES)
                        total_bytes += chunk_file.tell()
                    if (index + 1) % self._flush_every == 0:
                        output.flush()
            temp_path.replace(destination)
        except BaseException:
            remove_path(temp_path)
            raise

        with self._lock:
            self._sessions.pop(session_id, None)
        remove_path(session.staging_dir)

        logger.info(
            "assembled %d chunks into %s (%.2f GiB)",
            total_chunks,
            destination,
            total_bytes / 1024**3,
        )
        return total_bytes

    def discard(self, session_id: str) -> bool:
        """Forget a session and delete its staging directory."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            return remove_path(session.staging_dir)
        try:
            return remove_path(self._staging_root / validate_name(session_id))
        except ValueError:
            return False

    def sweep_expired(self, ttl_seconds: float, *, now: float | None = None) -> list[str]:
        """Remove sessions whose last activity is older than ``ttl_seconds``."""
        current = time.time() if now is None else now
        cutoff = current - ttl_seconds
        expired: list[str] = []

        with self._lock:
            tracked = dict(self._sessions)
        for session_id, session in tracked.items():
            if _last_activity(session.staging_dir, session.created_at) < cutoff:
                expired.append(session_id)

        if self._staging_root.is_dir():
            for candidate in self._staging_root.iterdir():
                if not candidate.is_dir() or candidate.name in tracked:
                    continue
                if _last_activity(candidate, candidate.stat().st_mtime) < cutoff:
                    expired.append(candidate.name)

        for session_id in expired:
            self.discard(session_id)
        if expired:
            logger.info("discarded %d abandoned upload session(s)", len(expired))
        return expired


def _indices_on_disk(staging_dir: Path) -> set[int]:
    indices: set[int] = set()
    for candidate in staging_dir.glob(f"{_CHUNK_PREFIX}*"):
        suffix = candidate.name[len(_CHUNK_PREFIX) :]
        if suffix.isdigit():
            indices.add(int(suffix))
    return indices


def _last_activity(staging_dir: Path, fallback: float) -> float:
    latest = fallback
    try:
        latest = max(latest, staging_dir.stat().st_mtime)
        for candidate in staging_dir.iterdir():
            latest = max(latest, candidate.stat().st_mtime)
    except OSError:
        return fallback
    return latest
