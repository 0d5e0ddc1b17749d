"""HTTP client helpers for talking to the modelferry daemon."""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx

DEFAULT_DAEMON_HOST = "127.0.0.1"
DEFAULT_DAEMON_PORT = 11436
DEFAULT_BASE_URL = f"http://localhost:{DEFAULT_DAEMON_PORT}"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_CHUNK_SIZE = 50 * 1024 * 1024
TERMINAL_STATUSES = frozenset({"ready", "failed"})

ChunkCallback = Callable[[int, int, int], None]


class DaemonHTTPError(RuntimeError):
    """HTTP status error returned by the daemon."""

    def __init__(self, *, action: str, status_code: int, detail: str) -> None:
        super().__init__(f"{action} failed with HTTP {status_code}: {detail}")
        self.action = action
        self.status_code = status_code
        self.detail = detail


class FerryClient:
    """Minimal client for the upload and model status endpoints."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def start_upload(self, *, file_name: str, file_size: int, model_name: str) -> str:
        payload = {"fileName": file_name, "fileSize": file_size, "modelName": model_name}
        data = self._request_json(
            "POST",
            "/api/uploads/start",
            json_payload=payload,
            action=f"start upload of {file_name!r}",
        )
        session_id = data.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            raise RuntimeError("daemon returned no upload session id")
        return session_id

    def upload_chunk(
        self,
        session_id: str,
        index: int,
        data: bytes,
        *,
        total_chunks: int,
    ) -> dict[str, Any]:
        return self._request_json(
            "PUT",
            f"/api/uploads/{session_id}/chunks/{index}",
            content=data,
            params={"totalChunks": total_chunks},
            action=f"upload chunk {index + 1}/{total_chunks}",
        )

    def complete_upload(
        self,
        session_id: str,
        *,
        total_chunks: int,
        model_name: str,
    ) -> dict[str, Any]:
        return self._request_json(
            "POST",
            f"/api/uploads/{session_id}/complete",
            json_payload={"totalChunks": total_chunks, "modelName": model_name},
            action="complete upload",
        )

    def upload_archive(
        self,
        archive: Path,
        *,
        model_name: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_chunk: ChunkCallback | None = None,
    ) -> dict[str, Any]:
        """Send ``archive`` in sequential chunks and start its import."""
        if chunk_size <= 0:
            raise ValueError("chunk_size must be greater than zero")
        file_size = archive.stat().st_size
        total_chunks = max(1, -(-file_size // chunk_size))
        session_id = self.start_upload(
            file_name=archive.name,
            file_size=file_size,
            model_name=model_name,
        )
        with archive.open("rb") as handle:
            for index in range(total_chunks):
                data = handle.read(chunk_size)
                self.upload_chunk(session_id, index, data, total_chunks=total_chunks)
                if on_chunk is not None:
                    on_chunk(index, total_chunks, len(data))
        return self.complete_upload(
            session_id,
            total_chunks=total_chunks,
            model_name=model_name,
        )

    def list_models(self) -> dict[str, Any]:
        return self._request_json("GET", "/api/models", action="list models")

    def show_model(self, model_id: str) -> dict[str, Any]:
        return self._request_json(
            "GET",
            f"/api/models/{model_id}",
            action=f"show model {model_id!r}",
        )

    def retry_model(self, model_id: str) -> dict[str, Any]:
        return self._request_json(
            "POST",
            f"/api/models/{model_id}/retry",
            action=f"retry model {model_id!r}",
        )

    def remove_model(self, model_id: str) -> dict[str, Any]:
        return self._request_json(
            "DELETE",
            f"/api/models/{model_id}",
            action=f"remove model {model_id!r}",
        )

    def wait_for_model(
        self,
        model_id: str,
        *,
        interval: float = 2.0,
        timeout: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> dict[str, Any]:
        """Poll model status until it is ``ready`` or ``failed``."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            record = self.show_model(model_id)
            if record.get("status") in TERMINAL_STATUSES:
                return record
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError(f"model {model_id!r} is still {record.get('status')!r}")
            sleep(interval)

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        json_payload: dict[str, Any] | None = None,
        content: bytes | None = None,
        params: dict[str, Any] | None = None,
        action: str,
    ) -> dict[str, Any]:
        response = self._send_request(
            method,
            path,
            json_payload=json_payload,
            content=content,
            params=params,
            action=action,
        )
        try:
            data = response.json()
        except ValueError as exc:
            raise RuntimeError("daemon returned non-JSON response") from exc

        if not isinstance(data, dict):
            raise RuntimeError("daemon returned unexpected JSON payload")
        return data

    def _send_request(
        self,
        method: str,
        path: str,
        *,
        json_payload: dict[str, Any] | None = None,
        content: bytes | None = None,
        params: dict[str, Any] | None = None,
        action: str,
    ) -> httpx.Response:
        try:
            with httpx.Client(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = client.request(
                    method,
                    path,
                    json=json_payload,
                    content=content,
                    params=params,
                )
        except httpx.HTTPError as exc:
            raise RuntimeError(f"{action} failed: {exc}") from exc

        if response.is_error:
            raise DaemonHTTPError(
                action=action,
                status_code=response.status_code,
                detail=response.text,
            )
        return response
