"""Python client for the PrakritiMitra chat and attendance server."""

from prakritimitra.client.attendance import (
    SCAN_FAILURE_MESSAGE,
    AttendanceController,
    EntryPayload,
    ExitPayload,
    InvalidQrCode,
    ScanResult,
    parse_qr_payload,
)
from prakritimitra.client.chat import ChatSession, ChatState, PinConflictError
from prakritimitra.client.connection import (
    ApiError,
    ConnectionManager,
    NotConnectedError,
)
from prakritimitra.client.dashboard import AttendanceStatsWatcher
from prakritimitra.client.uploads import (
    TransferProgress,
    UploadFailed,
    UploadFailureKind,
    UploadRejected,
    Uploader,
    UploadTracker,
)

__all__ = [
    "SCAN_FAILURE_MESSAGE",
    "ApiError",
    "AttendanceController",
    "AttendanceStatsWatcher",
    "ChatSession",
    "ChatState",
    "ConnectionManager",
    "EntryPayload",
    "ExitPayload",
    "InvalidQrCode",
    "NotConnectedError",
    "PinConflictError",
    "ScanResult",
    "TransferProgress",
    "UploadFailed",
    "UploadFailureKind",
    "UploadRejected",
    "UploadTracker",
    "Uploader",
    "parse_qr_payload",
]
