"""Install or remove the crontab line that ejects expired volumes."""

from __future__ import annotations

import logging
import shlex
import subprocess
from typing import List

from .backends.base import run_command
from .errors import BackendUnavailable

logger = logging.getLogger(__name__)


def eject_command(executable: str) -> str:
    return f"{shlex.quote(executable)} eject --expired"


def cron_line(executable: str, schedule: str = "0 * * * *") -> str:
    return f"{schedule} {eject_command(executable)}"


def read_crontab() -> List[str]:
    try:
        result = subprocess.run(["crontab", "-l"], capture_output=True, check=False)
    except FileNotFoundError as exc:
        raise BackendUnavailable("crontab") from exc
    if result.returncode != 0:
        # "no crontab for <user>"
        return []
    return result.stdout.decode(errors="replace").splitlines()


def write_crontab(lines: List[str]) -> None:
    content = "\n".join(lines) + "\n" if lines else ""
    run_command(["crontab", "-"], input_data=content.encode())


def update_lines(lines: List[str], executable: str, schedule: str, install: bool) -> List[str]:
    command = eject_command(executable)
    kept = [line for line in lines if not line.strip().endswith(command)]
    if install:
        kept.append(cron_line(executable, schedule))
    return kept


def install(executable: str, schedule: str = "0 * * * *") -> bool:
    """Add the cron line; returns False when it was already present unchanged."""
    lines = read_crontab()
    if cron_line(executable, schedule) in (line.strip() for line in lines):
        return False
    updated = update_lines(lines, executable, schedule, install=True)
    write_crontab(updated)
    logger.info("installed cron entry: %s", cron_line(executable, schedule))
    return True


def uninstall(executable: str) -> bool:
    """Remove the cron line; returns False when there was nothing to remove."""
    lines = read_crontab()
    updated = update_lines(lines, executable, "", install=False)
    if updated == lines:
        return False
    write_crontab(updated)
    logger.info("removed cron entry for %s", eject_command(executable))
    return True
