"""User activity log kept as a JSON document, newest entry first."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from services.errors import InvalidRequest, io_error
from services.fileio import file_lock, read_json, write_json
from services.logging_setup import core_log


DEFAULT_MAX_ENTRIES = 10000


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ActivityLog:
    def __init__(self, path: str, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self.path = path
        self.lock_path = path + ".lock"
        self.max_entries = max(1, int(max_entries))

    def _load(self) -> List[Dict[str, Any]]:
        try:
            logs = read_json(self.path, [])
        except ValueError as e:
            core_log("warning", "activity log unreadable, starting empty", path=self.path, error=e)
            return []
        return logs if isinstance(logs, list) else []

    def _save(self, logs: List[Dict[str, Any]]) -> None:
        try:
            write_json(self.path, logs)
        except OSError as e:
            raise io_error(e, "activity log")

    def record(
        self,
        action: str,
        target_name: str,
        target_type: str,
        path: str = "",
        extra: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        entry = {
            "timestamp": _now().isoformat(timespec="seconds"),
            "action": str(action),
            "targetName": str(target_name or ""),
            "targetType": str(target_type or ""),
            "path": str(path or ""),
            "extra": dict(extra or {}),
        }
        with file_lock(self.lock_path):
            logs = self._load()
            logs.insert(0, entry)
            del logs[self.max_entries:]
            self._save(logs)
        return entry

    def read(
        self,
        page: int = 1,
        limit: int = 50,
        action: Optional[str] = None,
        target_type: Optional[str] = None,
        search: Optional[str] = None,
    ) -> Dict[str, Any]:
        page = max(1, int(page))
        limit = max(1, min(500, int(limit)))
        with file_lock(self.lock_path, shared=True):
            logs = self._load()
        if action:
            logs = [e for e in logs if e.get("action") == action]
        if target_type:
            logs = [e for e in logs if e.get("targetType") == target_type]
        if search:
            needle = search.casefold()
            logs = [
                e for e in logs
                if needle in str(e.get("targetName", "")).casefold() or needle in str(e.get("path", "")).casefold()
            ]
        total = len(logs)
        start = (page - 1) * limit
        return {
            "logs": logs[start:start + limit],
            "total": total,
            "page": page,
            "totalPages": max(1, math.ceil(total / limit)),
        }

    def cleanup(self, days: float) -> int:
        """Drop entries older than ``days``; returns how many were removed."""
        if days < 0:
            raise InvalidRequest("days must not be negative")
        cutoff = _now() - timedelta(days=float(days))
        with file_lock(self.lock_path):
            logs = self._load()
            kept = [e for e in logs if not _older_than(e, cutoff)]
            removed = len(logs) - len(kept)
            if removed:
                self._save(kept)
        return removed


def _older_than(entry: Dict[str, Any], cutoff: datetime) -> bool:
    try:
        ts = datetime.fromisoformat(str(entry.get("timestamp")))
    except ValueError:
        return False
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts < cutoff
