"""
ejector.py
Detach volumes chosen by a selection policy, best effort.

Every matched volume is attempted even if an earlier one fails; the
caller gets one outcome per volume.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import List, Optional

from . import constants, logging_utils, scanner
from .backends.base import DiskImageBackend
from .errors import BackendError
from .models import All, ByTarget, EjectOutcome, EncryptedVolume, ExpiredOnly, SelectionPolicy, utcnow

logger = logging.getLogger(__name__)


def _same_path(a: Optional[str], b: str) -> bool:
    if not a:
        return False
    return a == b or os.path.realpath(a) == os.path.realpath(b)


def select_volumes(volumes: List[EncryptedVolume], policy: SelectionPolicy, now: Optional[datetime] = None) -> List[EncryptedVolume]:
    if isinstance(policy, All):
        return list(volumes)
    if isinstance(policy, ExpiredOnly):
        now = now or utcnow()
        return [v for v in volumes if v.is_expired(now)]
    if isinstance(policy, ByTarget):
        return [
            v for v in volumes
            if _same_path(v.mount_point, policy.target) or _same_path(v.backing_image_path, policy.target)
        ]
    raise TypeError(f"unsupported selection policy: {policy!r}")


def eject(backend: DiskImageBackend, policy: SelectionPolicy, now: Optional[datetime] = None) -> List[EjectOutcome]:
    now = now or utcnow()
    selected = select_volumes(scanner.scan(backend), policy, now)
    outcomes = []
    for volume in selected:
        fields = {
            constants.LOG_KEY_EVENT: constants.EVENT_EJECT,
            constants.LOG_KEY_MOUNT_POINT: volume.mount_point,
            constants.LOG_KEY_LABEL: volume.label,
        }
        try:
            backend.eject(volume.mount_point)
        except BackendError as exc:
            outcomes.append(EjectOutcome(volume, error=str(exc)))
            logging_utils.log_structured(
                logger, f"failed to eject {volume.mount_point}", {**fields, constants.LOG_KEY_RESULT: "fail"}, level=logging.ERROR
            )
            continue
        outcomes.append(EjectOutcome(volume))
        logging_utils.log_structured(logger, f"ejected {volume.mount_point}", {**fields, constants.LOG_KEY_RESULT: "ok"})
    return outcomes


def batch_failed(outcomes: List[EjectOutcome]) -> bool:
    return any(not o.ok for o in outcomes)
