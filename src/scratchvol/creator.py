"""
creator.py
Create, attach and secure a new encrypted volume as one logical step.

Steps run strictly in order: create image -> attach -> backup exclusion.
When a later step fails, the earlier ones are undone so no attached but
unsecured volume and no stray image are left behind.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from . import constants, expiry, logging_utils
from .backends.base import DiskImageBackend
from .errors import AttachError, BackendError, BackendUnavailable
from .models import EncryptedVolume, Named, Sized, VolumeSpec, utcnow

logger = logging.getLogger(__name__)


def _slug(name: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._")
    return slug or "volume"


def image_path_for(image_dir: Path, label: str, suffix: str) -> str:
    return str(Path(image_dir) / f"{constants.OWNED_PREFIX}{uuid.uuid4().hex}-{_slug(label)}{suffix}")


def label_for(spec: VolumeSpec, now: datetime) -> str:
    if isinstance(spec, Sized):
        return expiry.encode(now, spec.ttl_days)
    if isinstance(spec, Named):
        if not spec.display_name.strip():
            raise BackendError("volume name must not be empty")
        if expiry.is_expiry_label(spec.display_name):
            raise BackendError(f"volume name {spec.display_name!r} is reserved for expiring volumes")
        return spec.display_name
    raise TypeError(f"unsupported volume spec: {spec!r}")


def _remove_image(image_path: str) -> None:
    try:
        os.remove(image_path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("could not remove image %s: %s", image_path, exc)


def _rollback(backend: DiskImageBackend, image_path: str, mount_point: Optional[str]) -> None:
    if mount_point:
        try:
            backend.eject(mount_point)
        except (BackendError, BackendUnavailable) as exc:
            logging_utils.log_structured(
                logger,
                f"rollback could not eject {mount_point}",
                {
                    constants.LOG_KEY_EVENT: constants.EVENT_ROLLBACK,
                    constants.LOG_KEY_MOUNT_POINT: mount_point,
                    constants.LOG_KEY_RESULT: str(exc),
                },
                level=logging.ERROR,
            )
    _remove_image(image_path)


def create_volume(
    backend: DiskImageBackend,
    spec: VolumeSpec,
    password: str,
    image_dir: Path,
    now: Optional[datetime] = None,
    progress_cb: Optional[Callable[[str, int], None]] = None,
) -> EncryptedVolume:
    """Create a volume for spec, encrypted with password, and return it mounted."""
    def emit(stage: str, pct: int):
        if progress_cb:
            progress_cb(stage, pct)

    now = now or utcnow()
    label = label_for(spec, now)
    expires = expiry.decode(label)
    image_path = image_path_for(image_dir, label, backend.image_suffix)
    fields = {
        constants.LOG_KEY_BACKEND: backend.name,
        constants.LOG_KEY_IMAGE: image_path,
        constants.LOG_KEY_LABEL: label,
        constants.LOG_KEY_EXPIRY: expires.date().isoformat() if expires else "never",
    }

    emit("create", 10)
    try:
        backend.create_image(image_path, spec.size_mb, password, label)
    except BaseException:
        _remove_image(image_path)
        raise
    logging_utils.log_structured(logger, "created image", {**fields, constants.LOG_KEY_EVENT: constants.EVENT_CREATE})

    emit("attach", 50)
    mount_point = None
    try:
        mount_point = backend.attach(image_path, password)
        if not mount_point:
            raise AttachError(f"attaching {image_path} produced no mount point")
        logging_utils.log_structured(
            logger,
            "attached image",
            {**fields, constants.LOG_KEY_EVENT: constants.EVENT_ATTACH, constants.LOG_KEY_MOUNT_POINT: mount_point},
        )
        emit("secure", 80)
        backend.exclude_from_backup(mount_point)
    except BaseException:
        _rollback(backend, image_path, mount_point)
        raise
    logging_utils.log_structured(
        logger,
        "excluded volume from backups",
        {**fields, constants.LOG_KEY_EVENT: constants.EVENT_EXCLUDE, constants.LOG_KEY_MOUNT_POINT: mount_point},
    )
    emit("done", 100)

    return EncryptedVolume(
        mount_point=mount_point,
        backing_image_path=image_path,
        label=label,
        expiry=expires,
    )


def discard_image(volume: EncryptedVolume) -> None:
    """Delete the image file of a mounted volume; ejecting it then destroys the data."""
    if not volume.backing_image_path:
        return
    try:
        os.remove(volume.backing_image_path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        raise BackendError(f"cannot delete image {volume.backing_image_path}", str(exc)) from exc
