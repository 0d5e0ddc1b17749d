"""Download-once cache of base models required by adapter imports."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from pathlib import Path

import httpx

from .errors import DownloadFailed
from .extract import ArchiveExtractor
from .storage import remove_path, validate_name

logger = logging.getLogger(__name__)

_DOWNLOAD_BLOCK_BYTES = 1024 * 1024
_PROGRESS_EVERY_BYTES = 64 * 1024 * 1024
_PROGRESS_EVERY_PERCENT = 5.0
_PROGRESS_MIN_SECONDS = 1.0


class BaseModelResolver:
    """Return a local directory for a base model, downloading it on first use.

    A cache entry is published by renaming a fully extracted temporary sibling
    directory into place, so an interrupted download never looks like a cache
    hit. Concurrent resolutions of the same identifier share one download.
    """

    def __init__(
        self,
        cache_root: Path,
        *,
        url_template: str | None,
        extractor: ArchiveExtractor | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._cache_root = cache_root
        self._url_template = url_template
        self._extractor = extractor or ArchiveExtractor()
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def cache_root(self) -> Path:
        return self._cache_root

    def cached(self, base_model_id: str) -> Path | None:
        """Return the cache directory when present; presence is the only check."""
        path = self._cache_root / validate_name(base_model_id)
        return path if path.is_dir() else None

    def list_cached(self) -> list[str]:
        if not self._cache_root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self._cache_root.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )

    def url_for(self, base_model_id: str) -> str:
        if self._url_template is None:
            raise DownloadFailed(base_model_id, "no base model URL template is configured")
        return self._url_template.format(name=base_model_id)

    async def resolve(self, base_model_id: str) -> Path:
        """Return the local path for ``base_model_id``, fetching it if absent."""
        try:
            validate_name(base_model_id)
        except ValueError as exc:
            raise DownloadFailed(base_model_id, str(exc)) from exc

        existing = self.cached(base_model_id)
        if existing is not None:
            logger.info("base model %s already cached at %s", base_model_id, existing)
            return existing

        lock = self._locks.setdefault(base_model_id, asyncio.Lock())
        self._lock_users[base_model_id] = self._lock_users.get(base_model_id, 0) + 1
        try:
            async with lock:
                return await self._resolve_locked(base_model_id)
        finally:
            self._lock_users[base_model_id] -= 1
            if self._lock_users[base_model_id] == 0:
                del self._lock_users[base_model_id]
                self._locks.pop(base_model_id, None)

    async def _resolve_locked(self, base_model_id: str) -> Path:
        existing = self.cached(base_model_id)
        if existing is not None:
            logger.info("base model %s was fetched by a concurrent import", base_model_id)
            return existing

        if self._timeout_seconds is None:
            return await self._fetch(base_model_id)
        try:
            return await asyncio.wait_for(
                self._fetch(base_model_id),
                timeout=self._timeout_seconds,
            )
        except TimeoutError as exc:
            raise DownloadFailed(
                base_model_id,
                f"timed out after {self._timeout_seconds:g}s",
            ) from exc

    async def _fetch(self, base_model_id: str) -> Path:
        url = self.url_for(base_model_id)
        self._cache_root.mkdir(parents=True, exist_ok=True)
        token = uuid.uuid4().hex[:8]
        archive_path = self._cache_root / f".{base_model_id}.{token}.zip.part"
        staging_dir = self._cache_root / f".{base_model_id}.{token}.tmp"
        final_dir = self._cache_root / base_model_id

        try:
            await self._download(base_model_id, url, archive_path)
            logger.info("download of %s complete, extracting", base_model_id)
            await self._extractor.extract(archive_path, staging_dir)
            if final_dir.is_dir():
                # Published by another process while this one was downloading.
                remove_path(staging_dir)
            else:
                staging_dir.replace(final_dir)
        except BaseException:
            remove_path(staging_dir)
            raise
        finally:
            remove_path(archive_path)

        logger.info("base model %s ready at %s", base_model_id, final_dir)
        return final_dir

    async def _download(self, base_model_id: str, url: str, target: Path) -> int:
        logger.info("downloading base model %s from %s", base_model_id, url)
        timeout = httpx.Timeout(30.0, read=None)
        try:
            async with httpx.AsyncClient(
                timeout=timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code != 200:
                        raise DownloadFailed(
                            base_model_id,
                            f"HTTP {response.status_code} from {url}",
                        )
                    total = _content_length(response)
                    written = 0
                    progress = _ProgressLog(base_model_id, total)
                    with target.open("wb") as handle:
                        async for block in response.aiter_bytes(_DOWNLOAD_BLOCK_BYTES):
                            handle.write(block)
                            written += len(block)
                            progress.update(written)
        except httpx.HTTPError as exc:
            raise DownloadFailed(base_model_id, _compact_exception_message(exc)) from exc
        except OSError as exc:
            raise DownloadFailed(base_model_id, f"unable to write {target}: {exc}") from exc

        if total is not None and written != total:
            raise DownloadFailed(
                base_model_id,
                f"incomplete download: received {written} of {total} bytes",
            )
        logger.info("downloaded %s (%.2f MiB)", base_model_id, written / 1024**2)
        return written


class _ProgressLog:
    """Throttled download progress reporting."""

    def __init__(self, name: str, total: int | None) -> None:
        self._name = name
        self._total = total
        self._last_bytes = 0
        self._last_percent = 0.0
        self._last_time = time.monotonic()

    def update(self, written: int) -> None:
        now = time.monotonic()
        if now - self._last_time < _PROGRESS_MIN_SECONDS:
            return
        if self._total:
            percent = written * 100.0 / self._total
            if percent - self._last_percent < _PROGRESS_EVERY_PERCENT:
                return
            logger.info(
                "downloading %s: %.1f%% (%.2f / %.2f MiB)",
                self._name,
                percent,
                written / 1024**2,
                self._total / 1024**2,
            )
            self._last_percent = percent
        else:
            if written - self._last_bytes < _PROGRESS_EVERY_BYTES:
                return
            logger.info("downloading %s: %.2f MiB", self._name, written / 1024**2)
        self._last_bytes = written
        self._last_time = now


def _content_length(response: httpx.Response) -> int | None:
    raw = response.headers.get("content-length")
    if raw is None or "content-encoding" in response.headers:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value >= 0 else None


def _compact_exception_message(exc: Exception) -> str:
    message = str(exc).strip()
    if message:
        return message
    return exc.__class__.__name__
