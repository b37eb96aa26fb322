"""scratchvol package exports for test/import convenience."""

from . import archive, backends, config, constants, creator, cron, ejector, expiry, importer, logging_utils, scanner

__version__ = "1.0.0"

__all__ = [
    "archive",
    "backends",
    "config",
    "constants",
    "creator",
    "cron",
    "ejector",
    "expiry",
    "importer",
    "logging_utils",
    "scanner",
]
