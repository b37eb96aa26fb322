"""
hdiutil.py
macOS backend: AES-256 encrypted DMGs driven through hdiutil(1).

Passwords are piped with -stdinpass, never passed as arguments.
"""

from __future__ import annotations

import logging
import os
import plistlib
import shutil
from pathlib import Path
from typing import List, Optional

from .. import constants
from ..errors import AttachError, BackendError, BackendUnavailable
from ..models import AttachedImage
from .base import DiskImageBackend, run_command

logger = logging.getLogger(__name__)


def _run(cmd: List[str], input_data: Optional[bytes] = None, error_cls=BackendError):
    return run_command(cmd, input_data=input_data, error_cls=error_cls)


def _load_plist(data: bytes, what: str) -> dict:
    try:
        parsed = plistlib.loads(data)
    except Exception as exc:
        raise BackendError(f"unreadable {what} output", str(exc)) from exc
    if not isinstance(parsed, dict):
        raise BackendError(f"unexpected {what} output")
    return parsed


def mount_points_from_plist(info: dict) -> List[str]:
    """Mount points of all system entities in an attach/info image entry."""
    return [
        entity["mount-point"]
        for entity in info.get("system-entities", [])
        if entity.get("mount-point")
    ]


class HdiutilBackend(DiskImageBackend):
    name = "hdiutil"
    image_suffix = ".dmg"

    def __init__(self, filesystem: str = "HFS+", encryption: str = "AES-256"):
        self.filesystem = filesystem
        self.encryption = encryption

    def ensure_available(self) -> None:
        if not shutil.which("hdiutil"):
            raise BackendUnavailable("hdiutil")

    def create_image(self, image_path: str, size_mb: int, password: str, volume_name: str) -> str:
        if size_mb <= 0:
            raise BackendError(f"invalid image size: {size_mb} MB")
        _run(
            [
                "hdiutil",
                "create",
                "-megabytes",
                str(size_mb),
                "-ov",
                "-volname",
                volume_name,
                "-fs",
                self.filesystem,
                "-encryption",
                self.encryption,
                "-stdinpass",
                image_path,
            ],
            input_data=password.encode(),
        )
        return image_path

    def attach(self, image_path: str, password: str) -> str:
        result = _run(
            ["hdiutil", "attach", "-stdinpass", "-plist", image_path],
            input_data=password.encode(),
            error_cls=AttachError,
        )
        mount_points = mount_points_from_plist(_load_plist(result.stdout, "hdiutil attach"))
        if not mount_points:
            raise AttachError(f"attaching {image_path} produced no mount point")
        return mount_points[0]

    def _volume_name(self, mount_point: str) -> str:
        try:
            result = _run(["diskutil", "info", "-plist", mount_point])
            name = _load_plist(result.stdout, "diskutil info").get("VolumeName")
        except BackendError as exc:
            logger.debug("diskutil info failed for %s: %s", mount_point, exc)
            name = None
        return name or Path(mount_point).name

    def list_attached(self) -> List[AttachedImage]:
        result = _run(["hdiutil", "info", "-plist"])
        info = _load_plist(result.stdout, "hdiutil info")
        attached = []
        for image in info.get("images", []):
            image_path = image.get("image-path")
            if not image_path or not os.path.basename(image_path).startswith(constants.OWNED_PREFIX):
                continue
            for mount_point in mount_points_from_plist(image):
                attached.append(AttachedImage(mount_point, image_path, self._volume_name(mount_point)))
        return attached

    def eject(self, target: str) -> None:
        _run(["hdiutil", "eject", target])

    def exclude_from_backup(self, mount_point: str) -> None:
        try:
            Path(mount_point, ".metadata_never_index").write_text("")
        except OSError as exc:
            raise BackendError(f"cannot write index marker on {mount_point}", str(exc)) from exc
        # Spotlight is best effort; Time Machine exclusion is required
        try:
            _run(["mdutil", "-E", "-i", "off", mount_point])
        except (BackendError, BackendUnavailable) as exc:
            logger.warning("could not disable indexing on %s: %s", mount_point, exc)
        _run(["tmutil", "addexclusion", mount_point])
