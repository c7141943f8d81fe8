"""Attachment uploads and downloads with per-operation progress.

Every transfer gets its own operation id so that concurrent uploads never
share a progress value. Failures are classified so the UI can decide
whether to offer a retry with the same file.
"""

import enum
import logging
import mimetypes
import os
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

import httpx

from prakritimitra.client.connection import ApiError, ConnectionManager
from prakritimitra.config import DEFAULT_UPLOAD_TYPES, MAX_UPLOAD_BYTES
from prakritimitra.schemas import Attachment, UploadResponse

log = logging.getLogger(__name__)

UPLOAD_PATH = "/api/chatbox/upload"


class UploadFailureKind(str, enum.Enum):
    TOO_LARGE = "too_large"
    BAD_TYPE = "bad_type"
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"
    NETWORK = "network"

    @property
    def retryable(self) -> bool:
        """Whether retrying the same file can succeed."""
        return self in (
            UploadFailureKind.RATE_LIMITED,
            UploadFailureKind.SERVER,
            UploadFailureKind.NETWORK,
        )


_FAILURE_MESSAGES = {
    UploadFailureKind.TOO_LARGE: "File is too large.",
    UploadFailureKind.BAD_TYPE: "This file type is not supported.",
    UploadFailureKind.AUTH: "Your session has expired. Please log in again.",
    UploadFailureKind.RATE_LIMITED: "Too many uploads. Wait a moment and retry.",
    UploadFailureKind.SERVER: "Upload failed on the server. Please retry.",
    UploadFailureKind.NETWORK: "Network error during upload. Please retry.",
}


@dataclass(frozen=True)
class UploadFailure:
    kind: UploadFailureKind
    message: str

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class UploadRejected(ValueError):
    """The file failed local validation; nothing was sent."""

    def __init__(self, failure: UploadFailure) -> None:
        super().__init__(failure.message)
        self.failure = failure


class UploadFailed(Exception):
    """A transfer failed after it started."""

    def __init__(self, operation_id: str, failure: UploadFailure) -> None:
        super().__init__(failure.message)
        self.operation_id = operation_id
        self.failure = failure


class TransferStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TransferProgress:
    """Progress of one upload or download."""

    operation_id: str
    filename: str
    total: int | None
    path: Path
    mime_type: str = "application/octet-stream"
    transferred: int = 0
    status: TransferStatus = TransferStatus.PENDING
    failure: UploadFailure | None = None
    result: Any = None

    @property
    def percent(self) -> int:
        if self.status is TransferStatus.DONE:
            return 100
        if not self.total:
            return 0
        return max(0, min(100, int(self.transferred * 100 / self.total)))


def classify_upload_failure(exc: BaseException) -> UploadFailure:
    """Map an upload exception to a failure kind."""
    if isinstance(exc, UploadRejected):
        return exc.failure
    if isinstance(exc, ApiError):
        if exc.status == 413:
            kind = UploadFailureKind.TOO_LARGE
        elif exc.status in (400, 415):
            kind = UploadFailureKind.BAD_TYPE
        elif exc.status in (401, 403):
            kind = UploadFailureKind.AUTH
        elif exc.status == 429:
            kind = UploadFailureKind.RATE_LIMITED
        else:
            kind = UploadFailureKind.SERVER
        message = _FAILURE_MESSAGES[kind]
        if kind is UploadFailureKind.TOO_LARGE and exc.problem.get("detail"):
            message = exc.problem["detail"]
        return UploadFailure(kind, message)
    if isinstance(exc, httpx.TransportError):
        return UploadFailure(
            UploadFailureKind.NETWORK, _FAILURE_MESSAGES[UploadFailureKind.NETWORK]
        )
    raise exc


def validate_local_file(
    path: Path,
    max_bytes: int = MAX_UPLOAD_BYTES,
    allowed_types: list[str] | None = None,
) -> str:
    """Check size and type before any network call. Returns the MIME type.

    Raises
    ------
    UploadRejected
        When the file is too large or of an unsupported type.
    """
    allowed = allowed_types if allowed_types is not None else DEFAULT_UPLOAD_TYPES
    size = path.stat().st_size
    if size > max_bytes:
        limit_mb = max_bytes // (1024 * 1024)
        raise UploadRejected(
            UploadFailure(
                UploadFailureKind.TOO_LARGE,
                f"File is too large. Maximum size is {limit_mb}MB.",
            )
        )
    mime_type, _ = mimetypes.guess_type(path.name)
    if mime_type not in allowed:
        raise UploadRejected(
            UploadFailure(
                UploadFailureKind.BAD_TYPE,
                f"File type {mime_type or path.suffix or 'unknown'} is not supported.",
            )
        )
    return mime_type  # type: ignore[return-value]


class _ProgressReader:
    """File wrapper that reports bytes read to a callback."""

    def __init__(self, fileobj: IO[bytes], on_progress: Callable[[int], None]):
        self._file = fileobj
        self._on_progress = on_progress
        self._sent = 0

    def read(self, size: int = -1) -> bytes:
        chunk = self._file.read(size)
        self._sent += len(chunk)
        self._on_progress(self._sent)
        return chunk

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        pos = self._file.seek(offset, whence)
        if whence == os.SEEK_SET and offset == 0:
            self._sent = 0
        return pos

    def tell(self) -> int:
        return self._file.tell()


@dataclass
class UploadTracker:
    """Progress of all transfers, keyed by operation id."""

    operations: dict[str, TransferProgress] = field(default_factory=dict)
    listeners: list[Callable[[TransferProgress], None]] = field(default_factory=list)

    def start(
        self, path: Path, total: int | None, mime_type: str = "application/octet-stream"
    ) -> TransferProgress:
        progress = TransferProgress(
            operation_id=uuid.uuid4().hex,
            filename=path.name,
            total=total,
            path=path,
            mime_type=mime_type,
        )
        self.operations[progress.operation_id] = progress
        return progress

    def get(self, operation_id: str) -> TransferProgress | None:
        return self.operations.get(operation_id)

    def update(self, operation_id: str, transferred: int) -> None:
        progress = self.operations.get(operation_id)
        if progress is None:
            return
        progress.status = TransferStatus.RUNNING
        progress.transferred = transferred
        self._notify(progress)

    def complete(self, operation_id: str, result: Any = None) -> None:
        progress = self.operations.get(operation_id)
        if progress is None:
            return
        progress.status = TransferStatus.DONE
        progress.result = result
        progress.failure = None
        self._notify(progress)

    def fail(self, operation_id: str, failure: UploadFailure) -> None:
        progress = self.operations.get(operation_id)
        if progress is None:
            return
        progress.status = TransferStatus.FAILED
        progress.failure = failure
        self._notify(progress)

    def discard(self, operation_id: str) -> None:
        self.operations.pop(operation_id, None)

    def _notify(self, progress: TransferProgress) -> None:
        for listener in self.listeners:
            listener(progress)


class Uploader:
    """Two-phase attachment upload: validate locally, then send."""

    def __init__(
        self,
        connection: ConnectionManager,
        tracker: UploadTracker | None = None,
        max_bytes: int = MAX_UPLOAD_BYTES,
        allowed_types: list[str] | None = None,
    ) -> None:
        self.connection = connection
        self.tracker = tracker or UploadTracker()
        self.max_bytes = max_bytes
        self.allowed_types = allowed_types

    def prepare(self, path: Path) -> TransferProgress:
        """Validate ``path`` and register a pending operation."""
        mime_type = validate_local_file(path, self.max_bytes, self.allowed_types)
        return self.tracker.start(path, path.stat().st_size, mime_type)

    async def run(self, operation_id: str) -> Attachment | None:
        """Upload a prepared file.

        Returns None if the operation was cancelled meanwhile.

        Raises
        ------
        UploadFailed
            With the classified failure; the operation stays tracked so it
            can be retried.
        """
        progress = self.tracker.get(operation_id)
        if progress is None:
            raise KeyError(operation_id)

        try:
            with progress.path.open("rb") as fh:
                reader = _ProgressReader(
                    fh, lambda sent: self.tracker.update(operation_id, sent)
                )
                resp = await self.connection.request(
                    "POST",
                    UPLOAD_PATH,
                    files={"file": (progress.filename, reader, progress.mime_type)},
                )
        except (ApiError, httpx.TransportError) as e:
            failure = classify_upload_failure(e)
            log.info("Upload %s failed: %s", operation_id, failure.kind.value)
            self.tracker.fail(operation_id, failure)
            raise UploadFailed(operation_id, failure) from e

        if self.tracker.get(operation_id) is None:
            log.debug("Upload %s finished after cancel; discarding", operation_id)
            return None

        body = UploadResponse.model_validate(resp.json())
        attachment = Attachment(
            url=body.file_url.url,
            filename=body.file_url.filename,
            mime_type=body.file_type,
            size_bytes=body.file_size,
        )
        self.tracker.complete(operation_id, attachment)
        return attachment

    async def retry(self, operation_id: str) -> Attachment | None:
        """Re-run a failed upload with the same file."""
        progress = self.tracker.get(operation_id)
        if progress is None:
            raise KeyError(operation_id)
        if progress.failure is not None and not progress.failure.retryable:
            raise UploadFailed(operation_id, progress.failure)
        progress.transferred = 0
        progress.failure = None
        progress.status = TransferStatus.PENDING
        return await self.run(operation_id)

    def cancel(self, operation_id: str) -> None:
        """Forget an operation locally. A request in flight is not aborted."""
        self.tracker.discard(operation_id)

    async def download(self, url: str, dest: Path) -> TransferProgress:
        """Stream ``url`` to ``dest`` under its own operation id."""
        progress = self.tracker.start(dest, None)
        try:
            async with self.connection.http.stream("GET", url) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise ApiError.from_response(resp)
                length = resp.headers.get("content-length")
                progress.total = int(length) if length else None
                received = 0
                with dest.open("wb") as fh:
                    async for chunk in resp.aiter_bytes():
                        fh.write(chunk)
                        received += len(chunk)
                        self.tracker.update(progress.operation_id, received)
        except (ApiError, httpx.TransportError) as e:
            failure = classify_upload_failure(e)
            self.tracker.fail(progress.operation_id, failure)
            raise UploadFailed(progress.operation_id, failure) from e
        self.tracker.complete(progress.operation_id, dest)
        return progress
