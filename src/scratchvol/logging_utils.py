from __future__ import annotations

import logging
from typing import Any, Dict, List

try:
    from systemd.journal import JournalHandler
except Exception:  # pragma: no cover
    JournalHandler = None

LOGGER_NAME = "scratchvol"


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    if not logger.handlers:
        if JournalHandler:
            handler = JournalHandler(SYSLOG_IDENTIFIER=LOGGER_NAME)
        else:
            handler = logging.StreamHandler()
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def _effective_handlers(logger: logging.Logger) -> List[logging.Handler]:
    # Module loggers are children of LOGGER_NAME and own no handlers themselves.
    handlers: List[logging.Handler] = []
    current = logger
    while current is not None:
        own = getattr(current, "handlers", [])
        try:
            handlers.extend(own)
        except TypeError:
            pass
        if not getattr(current, "propagate", False):
            break
        current = getattr(current, "parent", None)
    return handlers


def log_structured(logger: logging.Logger, message: str, extra_fields: Dict[str, Any], level: int = logging.INFO) -> None:
    # JournalHandler accepts a dict in extra; fall back to key=value text otherwise.
    handlers = _effective_handlers(logger)
    if JournalHandler and any(isinstance(h, JournalHandler) for h in handlers):
        logger.log(level, message, extra=extra_fields)
        return
    if extra_fields:
        fields = " ".join(f"{key}={value}" for key, value in extra_fields.items())
        logger.log(level, f"{message} {fields}")
        return
    logger.log(level, message)
