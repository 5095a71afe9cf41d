"""Runtime configuration read from FILEBAY_* environment variables."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Optional, Tuple

from services.filestore import DEFAULT_EDITABLE_EXTENSIONS


def _read_int_env(name: str, default: int = 0) -> int:
    try:
        v = str(os.getenv(name, "") or "").strip()
        if not v:
            return int(default)
        return int(float(v))
    except ValueError:
        return int(default)


def _read_list_env(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    v = str(os.getenv(name, "") or "").strip()
    if not v:
        return tuple(default)
    return tuple(x.strip().lower().lstrip(".") for x in v.split(",") if x.strip())


def _is_writable_dir(path: str) -> bool:
    try:
        os.makedirs(path, exist_ok=True)
        test_path = os.path.join(path, ".writetest")
        with open(test_path, "w", encoding="utf-8") as f:
            f.write("")
        os.remove(test_path)
        return True
    except OSError:
        return False


def default_data_dir() -> str:
    """Writable directory for trash, upload staging, logs and the activity log.

    Server default: /opt/var/filebay
    Dev fallback: XDG/~/Library/Application Support/filebay (or ~/.config/filebay)

    Override with env FILEBAY_DATA_DIR.
    """
    env_dir = os.environ.get("FILEBAY_DATA_DIR")
    if env_dir:
        return env_dir
    default_dir = "/opt/var/filebay"
    if _is_writable_dir(default_dir):
        return default_dir
    home = os.path.expanduser("~")
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return os.path.join(xdg, "filebay")
    if sys.platform == "darwin":
        return os.path.join(home, "Library", "Application Support", "filebay")
    return os.path.join(home, ".config", "filebay")


@dataclass
class Settings:
    root: str
    data_dir: str
    trash_dir: str = ""
    staging_dir: str = ""
    log_dir: str = ""
    activity_log: str = ""
    max_upload_mb: int = 200
    max_edit_bytes: int = 256 * 1024
    editable_extensions: Tuple[str, ...] = field(default_factory=lambda: tuple(DEFAULT_EDITABLE_EXTENSIONS))
    trash_ttl_days: int = 30
    activity_max_entries: int = 10000
    max_extract_mb: int = 1024
    staging_max_age_hours: int = 24

    def __post_init__(self) -> None:
        self.root = os.path.abspath(os.path.expanduser(self.root))
        self.data_dir = os.path.abspath(os.path.expanduser(self.data_dir))
        self.trash_dir = self.trash_dir or os.path.join(self.data_dir, "trash")
        self.staging_dir = self.staging_dir or os.path.join(self.data_dir, "uploads")
        self.log_dir = self.log_dir or os.path.join(self.data_dir, "log")
        self.activity_log = self.activity_log or os.path.join(self.data_dir, "activity.json")

    @classmethod
    def from_env(cls, root: Optional[str] = None) -> "Settings":
        data_dir = default_data_dir()
        return cls(
            root=root or os.environ.get("FILEBAY_ROOT") or os.path.abspath("./files"),
            data_dir=data_dir,
            trash_dir=os.environ.get("FILEBAY_TRASH_DIR", ""),
            staging_dir=os.environ.get("FILEBAY_STAGING_DIR", ""),
            log_dir=os.environ.get("FILEBAY_LOG_DIR", ""),
            max_upload_mb=max(1, _read_int_env("FILEBAY_MAX_UPLOAD_MB", 200)),
            max_edit_bytes=max(1, _read_int_env("FILEBAY_MAX_EDIT_KB", 256)) * 1024,
            editable_extensions=_read_list_env("FILEBAY_EDITABLE_EXTENSIONS", DEFAULT_EDITABLE_EXTENSIONS),
            trash_ttl_days=max(0, _read_int_env("FILEBAY_TRASH_TTL_DAYS", 30)),
            activity_max_entries=max(1, _read_int_env("FILEBAY_ACTIVITY_MAX_ENTRIES", 10000)),
            max_extract_mb=max(1, _read_int_env("FILEBAY_MAX_EXTRACT_MB", 1024)),
            staging_max_age_hours=max(1, _read_int_env("FILEBAY_STAGING_MAX_AGE_HOURS", 24)),
        )

    @property
    def max_upload_bytes(self) -> int:
        return int(self.max_upload_mb) * 1024 * 1024

    @property
    def max_extract_bytes(self) -> int:
        return int(self.max_extract_mb) * 1024 * 1024

    def internal_paths(self) -> Tuple[str, ...]:
        """Locations the server keeps for itself; reserved when they sit under the root."""
        return (self.data_dir, self.trash_dir, self.staging_dir, self.log_dir, self.activity_log)

    def ensure_dirs(self) -> None:
        for d in (self.root, self.data_dir, self.trash_dir, self.staging_dir, self.log_dir):
            os.makedirs(d, exist_ok=True)
