"""Exceptions raised by the volume lifecycle code.

Only the CLI turns these into exit codes and user-facing messages.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class VolumeError(Exception):
    """Base exception for all scratchvol errors"""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "UNKNOWN"
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


class BackendUnavailable(VolumeError):
    """The disk-image or archive tool cannot be invoked at all"""

    def __init__(self, tool: str, reason: str = "not found"):
        super().__init__(
            message=f"{tool} is not available: {reason}",
            error_code="BACKEND_UNAVAILABLE",
        )
        self.tool = tool


class BackendError(VolumeError):
    """The backend rejected an operation (bad size, password, name, target)"""

    def __init__(self, message: str, stderr: str = "", error_code: str = "BACKEND_REJECTED"):
        super().__init__(
            message=f"{message}: {stderr}" if stderr else message,
            error_code=error_code,
            details={"stderr": stderr} if stderr else {},
        )
        self.stderr = stderr


class AttachError(BackendError):
    """Attaching an image did not yield a usable mount point"""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message, stderr=stderr, error_code="ATTACH_FAILED")


class ArchiveExtractionFailed(VolumeError):
    """Wrong password or corrupt archive; the volume is left mounted for a retry"""

    def __init__(self, archive_path: str, reason: str, volume=None):
        super().__init__(
            message=f"failed to extract {archive_path}: {reason}",
            error_code="ARCHIVE_EXTRACTION_FAILED",
        )
        self.archive_path = archive_path
        self.volume = volume


class ArchiveListingFailed(BackendError):
    """The archive's contents could not be listed, e.g. encrypted headers and a wrong password"""

    def __init__(self, archive_path: str, stderr: str = ""):
        super().__init__(f"cannot list {archive_path}", stderr=stderr, error_code="ARCHIVE_LISTING_FAILED")
        self.archive_path = archive_path
