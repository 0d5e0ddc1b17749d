"""Error taxonomy for the model import pipeline."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .extract import ExtractionAttempt


class ModelImportError(RuntimeError):
    """Base error for any stage of an upload or import."""

    stage = "import"

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint


class UnknownSession(ModelImportError):
    """Raised when a chunk or completion refers to an unknown upload session."""

    stage = "upload"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"upload session {session_id!r} does not exist")
        self.session_id = session_id


class MissingChunk(ModelImportError):
    """Raised when assembly finds one or more chunk indices were never stored."""

    stage = "assemble"

    def __init__(self, session_id: str, missing: Sequence[int]) -> None:
        preview = ", ".join(str(index) for index in list(missing)[:10])
        if len(missing) > 10:
            preview += ", ..."
        super().__init__(
            f"upload session {session_id!r} is missing {len(missing)} chunk(s): {preview}",
        )
        self.session_id = session_id
        self.missing = list(missing)


class ExtractionFailed(ModelImportError):
    """Raised when an archive cannot be validated or every extraction strategy failed."""

    stage = "extract"

    def __init__(self, archive: str, attempts: Sequence[ExtractionAttempt] = ()) -> None:
        self.archive = archive
        self.attempts = list(attempts)
        super().__init__(_compose_extraction_message(archive, self.attempts))


class DownloadFailed(ModelImportError):
    """Raised when a base model archive cannot be fetched."""

    stage = "resolve"

    def __init__(self, base_model_id: str, reason: str) -> None:
        super().__init__(f"failed to download base model {base_model_id!r}: {reason}")
        self.base_model_id = base_model_id
        self.reason = reason


class UnresolvedBaseModel(ModelImportError):
    """Raised when an adapter archive does not declare a usable base model."""

    stage = "detect"

    def __init__(self, detail: str | None = None) -> None:
        message = "adapter model detected but no base model is declared in adapter_config.json"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(
            message,
            hint="set base_model_name_or_path in adapter_config.json and upload again",
        )


class ModelfileError(ModelImportError):
    """Raised when a runtime Modelfile cannot be produced."""

    stage = "build"


class RuntimeInvocationFailed(ModelImportError):
    """Raised when an external runtime command exits non-zero or cannot start."""

    stage = "runtime"

    def __init__(
        self,
        command: Sequence[str],
        *,
        returncode: int | None,
        stderr: str = "",
        message: str | None = None,
    ) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        if message is None:
            detail = stderr.strip() or "no error output"
            message = (
                f"runtime command {' '.join(self.command)!r} exited with code "
                f"{returncode}: {detail}"
            )
        super().__init__(message)


class RuntimeTimeout(RuntimeInvocationFailed):
    """Raised when an external runtime command exceeds its time budget."""

    def __init__(self, command: Sequence[str], *, timeout_seconds: float, stderr: str = "") -> None:
        super().__init__(
            command,
            returncode=None,
            stderr=stderr,
            message=(
                f"runtime command {' '.join(command)!r} did not finish within "
                f"{timeout_seconds:g}s"
            ),
        )
        self.timeout_seconds = timeout_seconds


class AliasConflict(ModelImportError):
    """Raised when a new upload would reuse the runtime alias of an existing model."""

    stage = "upload"

    def __init__(self, alias: str, existing_id: str | None) -> None:
        if existing_id is None:
            message = f"runtime alias {alias!r} is already claimed by an upload in progress"
        else:
            message = f"runtime alias {alias!r} is already used by model {existing_id!r}"
        super().__init__(
            message,
            hint="choose a different model name or remove the existing model first",
        )
        self.alias = alias
        self.existing_id = existing_id


def _compose_extraction_message(archive: str, attempts: Sequence[ExtractionAttempt]) -> str:
    if not attempts:
        return f"unable to extract {archive}"
    lines = [f"unable to extract {archive}; tried {len(attempts)} strategies:"]
    for attempt in attempts:
        detail = " ".join(attempt.detail.split()) or "no output"
        if len(detail) > 300:
            detail = detail[:297] + "..."
        lines.append(f"  - {attempt.strategy}: {detail}")
    return "\n".join(lines)
