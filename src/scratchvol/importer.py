"""
importer.py
Import a password-protected archive into a fresh encrypted volume.

The volume is sized from the archive's uncompressed size plus a margin,
the archive is extracted with the same password that encrypts the volume,
and the image file is deleted afterwards unless the caller keeps it. With
the image gone, the mounted volume is the only copy of the data and
ejecting it destroys that copy.
"""

from __future__ import annotations

import logging
import math
import os
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from . import constants, creator, logging_utils
from .archive import ArchiveBackend
from .backends.base import DiskImageBackend
from .errors import ArchiveExtractionFailed, ArchiveListingFailed, BackendError, BackendUnavailable
from .models import EncryptedVolume, Named, Sized

logger = logging.getLogger(__name__)

MIB = 1024 * 1024


def estimate_size_mb(uncompressed_bytes: int, size_factor: float = 1.1, extra_mb: int = 100) -> int:
    """Volume capacity for an archive; a heuristic, not a guarantee."""
    return math.ceil(uncompressed_bytes / MIB * size_factor) + extra_mb


def import_archive(
    backend: DiskImageBackend,
    archiver: ArchiveBackend,
    archive_path: str,
    password: str,
    ttl_days: int,
    keep_image: bool,
    image_dir: Path,
    extra_mb: int = 100,
    size_factor: float = 1.1,
    volume_name: Optional[str] = None,
    now: Optional[datetime] = None,
    progress_cb: Optional[Callable[[str, int], None]] = None,
) -> EncryptedVolume:
    archive_path = os.path.realpath(archive_path)
    if not os.path.isfile(archive_path):
        raise BackendError(f"source archive is not a file: {archive_path}")

    def emit(stage: str, pct: int):
        if progress_cb:
            progress_cb(stage, pct)

    def creation_progress(stage: str, pct: int):
        # "done" is reported once the archive is extracted
        if stage != "done":
            emit(stage, pct)

    try:
        content_bytes = archiver.uncompressed_size(archive_path, password)
    except ArchiveListingFailed as exc:
        # Encrypted headers only list with the right password; the password
        # check below reports a wrong one against the mounted volume.
        logger.info("sizing %s from its file size: %s", archive_path, exc.message)
        content_bytes = os.path.getsize(archive_path)
    size_mb = estimate_size_mb(content_bytes, size_factor, extra_mb)
    spec = Named(volume_name, size_mb) if volume_name else Sized(size_mb, ttl_days)
    volume = creator.create_volume(backend, spec, password, image_dir, now=now, progress_cb=creation_progress)

    # From here on the volume stays mounted and its image stays on disk if
    # anything goes wrong, so the operator can inspect it or retry.
    emit("extract", 90)
    try:
        password_ok = archiver.check_password(archive_path, password)
        if password_ok:
            archiver.extract(archive_path, password, volume.mount_point)
    except (BackendError, BackendUnavailable) as exc:
        raise ArchiveExtractionFailed(archive_path, exc.message, volume=volume) from exc
    if not password_ok:
        raise ArchiveExtractionFailed(archive_path, "invalid password", volume=volume)

    if not keep_image:
        creator.discard_image(volume)
    emit("done", 100)
    logging_utils.log_structured(
        logger,
        f"imported {archive_path}",
        {
            constants.LOG_KEY_EVENT: constants.EVENT_IMPORT,
            constants.LOG_KEY_MOUNT_POINT: volume.mount_point,
            constants.LOG_KEY_IMAGE: volume.backing_image_path if keep_image else "deleted",
            constants.LOG_KEY_LABEL: volume.label,
        },
    )
    return volume
