from __future__ import annotations

import os
import tempfile
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

DEFAULT_CONFIG_PATH = Path("~/.config/scratchvol/config.toml").expanduser()
CONFIG_ENV_VAR = "SCRATCHVOL_CONFIG"

BACKENDS = ("auto", "hdiutil", "luks")


class ConfigError(ValueError):
    pass


@dataclass
class Config:
    backend: str = "auto"
    default_days: int = 7
    default_size_mb: int = 100
    image_dir: str = ""
    import_extra_mb: int = 100
    import_size_factor: float = 1.1
    min_passphrase_length: int = 8
    mount_base: str = "/run/scratchvol"
    filesystem_type: str = "ext4"
    mount_opts: List[str] = field(default_factory=lambda: ["nodev", "nosuid", "rw"])
    kdf: dict = field(default_factory=lambda: {"type": "argon2id"})
    cipher: dict = field(default_factory=lambda: {"type": "aes-xts-plain64", "key_size": 512})
    archiver: str = "7z"
    cron_schedule: str = "0 * * * *"

    @property
    def resolved_image_dir(self) -> Path:
        return Path(self.image_dir).expanduser() if self.image_dir else Path(tempfile.gettempdir())

    def validate(self) -> None:
        if self.backend not in BACKENDS:
            raise ConfigError(f"backend must be one of {', '.join(BACKENDS)}, got {self.backend!r}")
        if self.default_days < 0:
            raise ConfigError("default_days must not be negative")
        if self.default_size_mb <= 0:
            raise ConfigError("default_size_mb must be positive")
        if self.import_size_factor < 1.0:
            raise ConfigError("import_size_factor must be at least 1.0")
        if self.import_extra_mb < 0:
            raise ConfigError("import_extra_mb must not be negative")

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        if path:
            cfg_path = Path(path)
        elif os.environ.get(CONFIG_ENV_VAR):
            cfg_path = Path(os.environ[CONFIG_ENV_VAR])
        else:
            cfg_path = DEFAULT_CONFIG_PATH
        if not cfg_path.exists():
            return cls()
        with cfg_path.open("rb") as f:
            parsed = tomllib.load(f)

        cfg = cls(
            backend=parsed.get("backend", "auto"),
            default_days=int(parsed.get("default_days", 7)),
            default_size_mb=int(parsed.get("default_size_mb", 100)),
            image_dir=parsed.get("image_dir", ""),
            import_extra_mb=int(parsed.get("import_extra_mb", 100)),
            import_size_factor=float(parsed.get("import_size_factor", 1.1)),
            min_passphrase_length=int(parsed.get("min_passphrase_length", 8)),
            mount_base=parsed.get("mount_base", "/run/scratchvol"),
            filesystem_type=parsed.get("filesystem_type", "ext4"),
            mount_opts=parsed.get("mount_opts", ["nodev", "nosuid", "rw"]),
            kdf=parsed.get("kdf", {"type": "argon2id"}),
            cipher=parsed.get("cipher", {"type": "aes-xts-plain64", "key_size": 512}),
            archiver=parsed.get("archiver", "7z"),
            cron_schedule=parsed.get("cron_schedule", "0 * * * *"),
        )
        cfg.validate()
        return cfg
