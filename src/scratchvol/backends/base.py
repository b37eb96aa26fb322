"""
Disk-image backend interface.

The lifecycle code only talks to this interface, so tests can swap in a
fake that simulates attach/detach outcomes, including forced failures.
"""

from __future__ import annotations

import subprocess
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Type

from ..errors import BackendError, BackendUnavailable
from ..models import AttachedImage


def run_command(
    cmd: Sequence[str],
    input_data: Optional[bytes] = None,
    error_cls: Type[BackendError] = BackendError,
    display: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """Run cmd, raising BackendUnavailable if it cannot start and error_cls if it fails.

    ``display`` replaces the command line in error messages (for commands
    that carry a password in their arguments).
    """
    shown = display or " ".join(cmd)
    try:
        return subprocess.run(
            list(cmd),
            input=input_data,
            capture_output=True,
            check=True,
        )
    except FileNotFoundError as exc:
        raise BackendUnavailable(cmd[0]) from exc
    except PermissionError as exc:
        raise BackendUnavailable(cmd[0], "permission denied") from exc
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr.decode(errors="replace").strip() if exc.stderr else ""
        raise error_cls(f"{shown} failed", stderr) from exc


class DiskImageBackend(ABC):
    """
    Abstract base class for disk-image backends.

    Backends create encrypted, password-protected images, attach them,
    enumerate the attached images this tool owns, and detach them.
    """

    name = "base"
    image_suffix = ".img"

    @abstractmethod
    def ensure_available(self) -> None:
        """Raise BackendUnavailable if the backend's tools cannot be used."""

    @abstractmethod
    def create_image(self, image_path: str, size_mb: int, password: str, volume_name: str) -> str:
        """
        Create an encrypted image at image_path.

        Args:
            image_path: Where to write the container file
            size_mb: Capacity in megabytes
            password: Encryption passphrase, never persisted
            volume_name: Filesystem label, also the expiry channel

        Returns:
            The path of the created image
        """

    @abstractmethod
    def attach(self, image_path: str, password: str) -> str:
        """Attach an image and return its mount point (AttachError on failure)."""

    @abstractmethod
    def list_attached(self) -> List[AttachedImage]:
        """Return every attached image created by this tool."""

    @abstractmethod
    def eject(self, target: str) -> None:
        """Detach the volume mounted at target (BackendError on failure)."""

    @abstractmethod
    def exclude_from_backup(self, mount_point: str) -> None:
        """Mark a freshly mounted volume so OS backups skip it."""
