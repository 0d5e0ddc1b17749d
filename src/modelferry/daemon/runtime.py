"""Async invocation of the external model runtime's create/rm commands."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from pathlib import Path

from modelferry.core.config import DEFAULT_RUNTIME_COMMAND
from modelferry.core.errors import RuntimeInvocationFailed, RuntimeTimeout
from modelferry.core.processes import terminate_process

logger = logging.getLogger(__name__)

DEFAULT_CREATE_TIMEOUT_SECONDS = 3600.0
DEFAULT_DELETE_TIMEOUT_SECONDS = 120.0
_NOT_FOUND_MARKER = "not found"
_STDERR_LIMIT = 16_000


class RuntimeClient:
    """Run ``<runtime> create`` and ``<runtime> rm`` as child processes.

    Only the exit code decides success. Standard output is relayed to the log
    line by line while the command runs.
    """

    def __init__(
        self,
        command: Sequence[str] = DEFAULT_RUNTIME_COMMAND,
        *,
        create_timeout: float | None = DEFAULT_CREATE_TIMEOUT_SECONDS,
        delete_timeout: float | None = DEFAULT_DELETE_TIMEOUT_SECONDS,
    ) -> None:
        if not command:
            raise ValueError("runtime command must not be empty")
        self._command = tuple(command)
        self._create_timeout = create_timeout
        self._delete_timeout = delete_timeout

    @property
    def command(self) -> tuple[str, ...]:
        return self._command

    async def create(self, alias: str, modelfile_path: Path) -> None:
        """Register ``alias`` with the runtime from a Modelfile."""
        argv = [*self._command, "create", alias, "-f", str(modelfile_path)]
        logger.info("creating runtime model %s from %s", alias, modelfile_path)
        returncode, stderr = await self._run(argv, timeout=self._create_timeout, label="create")
        if returncode != 0:
            raise RuntimeInvocationFailed(argv, returncode=returncode, stderr=stderr)
        logger.info("runtime model %s created", alias)

    async def delete(self, alias: str) -> bool:
        """Remove ``alias`` from the runtime; ``False`` when it was already absent."""
        argv = [*self._command, "rm", alias]
        logger.info("deleting runtime model %s", alias)
        returncode, stderr = await self._run(argv, timeout=self._delete_timeout, label="rm")
        if returncode == 0:
            return True
        if _NOT_FOUND_MARKER in stderr.lower():
            logger.info("runtime model %s was not present", alias)
            return False
        raise RuntimeInvocationFailed(argv, returncode=returncode, stderr=stderr)

    async def _run(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None,
        label: str,
    ) -> tuple[int, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise RuntimeInvocationFailed(
                argv,
                returncode=None,
                message=f"unable to start runtime command {argv[0]!r}: {exc}",
            ) from exc

        stderr_chunks: list[str] = []
        pumps = asyncio.gather(
            _relay_stdout(process.stdout, label),
            _collect(process.stderr, stderr_chunks),
        )
        try:
            if timeout is None:
                await pumps
                returncode = await process.wait()
            else:
                returncode = await asyncio.wait_for(
                    _finish(pumps, process),
                    timeout=timeout,
                )
        except TimeoutError as exc:
            await terminate_process(process)
            raise RuntimeTimeout(
                argv,
                timeout_seconds=timeout or 0.0,
                stderr="".join(stderr_chunks),
            ) from exc
        except asyncio.CancelledError:
            await terminate_process(process)
            raise

        return returncode, "".join(stderr_chunks)[-_STDERR_LIMIT:]


async def _finish(pumps: asyncio.Future[list[None]], process: asyncio.subprocess.Process) -> int:
    await pumps
    return await process.wait()


async def _relay_stdout(stream: asyncio.StreamReader | None, label: str) -> None:
    if stream is None:
        return
    while True:
        try:
            raw = await stream.readline()
        except ValueError:
            # Progress output without newlines can exceed the reader limit.
            raw = await stream.read(65536)
        if not raw:
            return
        for part in raw.decode("utf-8", errors="replace").splitlines():
            line = part.strip()
            if line:
                logger.info("[runtime %s] %s", label, line)


async def _collect(stream: asyncio.StreamReader | None, sink: list[str]) -> None:
    if stream is None:
        return
    while True:
        raw = await stream.read(4096)
        if not raw:
            return
        sink.append(raw.decode("utf-8", errors="replace"))
