from __future__ import annotations

# Volume classifications
EXPIRED = "expired"
ACTIVE = "active"
NAMED = "named"

# Images and mappers created by this tool carry this prefix
OWNED_PREFIX = "scratchvol-"

# Journald keys
LOG_KEY_EVENT = "SV_EVENT"
LOG_KEY_MOUNT_POINT = "MOUNT_POINT"
LOG_KEY_IMAGE = "IMAGE"
LOG_KEY_LABEL = "LABEL"
LOG_KEY_EXPIRY = "EXPIRY"
LOG_KEY_RESULT = "RESULT"
LOG_KEY_BACKEND = "BACKEND"

# Events
EVENT_CREATE = "create"
EVENT_ATTACH = "attach"
EVENT_EXCLUDE = "exclude"
EVENT_IMPORT = "import"
EVENT_EJECT = "eject"
EVENT_ROLLBACK = "rollback"
EVENT_ERROR = "error"

# Exit codes
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_EXTRACTION_FAILED = 2
EXIT_INTERRUPTED = 130
