"""Soft delete: quarantine directory plus a JSON ledger.

Deleting moves the entry into ``<trash_dir>/<id>`` with a single rename and
records a row in ``<trash_dir>/metadata.json``. Every read-modify-write of the
ledger holds an flock on ``<trash_dir>/metadata.lock`` so concurrent requests
(threads or worker processes) cannot drop each other's rows.
"""

from __future__ import annotations

import os
import re
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from services.errors import (
    BulkReport,
    FsError,
    InvalidName,
    InvalidRequest,
    NotFound,
    PathEscape,
    TrashUnavailable,
    io_error,
)
from services.fileio import file_lock, read_json, write_json
from services.filestore import next_free_name, remove_tree, tree_size
from services.logging_setup import core_logger
from services.paths import RootContext, guard_subtree, join, resolve, resolve_entry, sanitize, split


LEDGER_NAME = "metadata.json"
LOCK_NAME = "metadata.lock"
RESTORE_PATTERN = "{stem}_restored_{n}{ext}"
RESTORE_ATTEMPTS = 1000
SECONDS_PER_DAY = 86400

_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

_LOG = core_logger()


@dataclass
class TrashEntry:
    id: str
    original_path: str
    original_name: str
    kind: str
    size: int
    deleted_at: int
    deleted_by: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "originalRelativePath": self.original_path,
            "originalName": self.original_name,
            "kind": self.kind,
            "sizeBytes": self.size,
            "deletedAt": self.deleted_at,
            "deletedBy": self.deleted_by,
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "TrashEntry":
        return cls(
            id=str(row["id"]),
            original_path=str(row["originalRelativePath"]),
            original_name=str(row.get("originalName") or ""),
            kind="folder" if row.get("kind") == "folder" else "file",
            size=int(row.get("sizeBytes") or 0),
            deleted_at=int(row["deletedAt"]),
            deleted_by=str(row.get("deletedBy") or "unknown"),
        )


def new_trash_id() -> str:
    return f"trash_{uuid.uuid4().hex}"


def _device(path: str) -> int:
    return os.stat(path).st_dev


class TrashStore:
    def __init__(self, trash_dir: str) -> None:
        os.makedirs(trash_dir, exist_ok=True)
        self.trash_dir = os.path.realpath(trash_dir)
        self.ledger_path = os.path.join(self.trash_dir, LEDGER_NAME)
        self.lock_path = os.path.join(self.trash_dir, LOCK_NAME)
        self._maint_lock = threading.Lock()
        self._last_purge = 0.0

    # --- ledger ---

    def _set_aside(self, reason: str) -> None:
        aside = f"{self.ledger_path}.corrupt-{int(time.time())}"
        os.replace(self.ledger_path, aside)
        _LOG.warning(f"trash ledger unreadable, moved aside | reason={reason}, path={aside}")

    def _load(self) -> List[TrashEntry]:
        try:
            rows = read_json(self.ledger_path, [])
        except ValueError as e:
            self._set_aside(str(e))
            return []
        if not isinstance(rows, list):
            self._set_aside("not a list")
            return []
        entries: List[TrashEntry] = []
        for row in rows:
            try:
                entries.append(TrashEntry.from_dict(row))
            except (KeyError, TypeError, ValueError, AttributeError):
                _LOG.warning(f"trash ledger: skipping malformed row | row={row!r}")
        return entries

    def _save(self, entries: Iterable[TrashEntry]) -> None:
        try:
            write_json(self.ledger_path, [e.to_dict() for e in entries])
        except OSError as e:
            raise io_error(e, LEDGER_NAME)

    def _blob(self, entry_id: str) -> str:
        return os.path.join(self.trash_dir, entry_id)

    def _is_internal(self, abs_path: str) -> bool:
        ap = os.path.realpath(abs_path) if not os.path.islink(abs_path) else os.path.normpath(abs_path)
        try:
            common = os.path.commonpath([ap, self.trash_dir])
        except ValueError:
            return False
        return common in (ap, self.trash_dir)

    def check_filesystem(self, root: RootContext) -> None:
        """Raise ``TrashUnavailable`` unless the trash shares the root's filesystem.

        Trashing and restoring are single renames, which cannot cross devices.
        """
        if _device(self.trash_dir) != _device(root.path):
            raise TrashUnavailable(
                "trash folder is on a different filesystem than the root; "
                "point FILEBAY_TRASH_DIR at a folder on the same filesystem",
                target=self.trash_dir,
            )

    # --- queries ---

    def list(self) -> List[TrashEntry]:
        with file_lock(self.lock_path):
            entries = self._load()
        return sorted(entries, key=lambda e: e.deleted_at, reverse=True)

    def get(self, entry_id: str) -> TrashEntry:
        for e in self.list():
            if e.id == entry_id:
                return e
        raise NotFound("not in trash", target=entry_id)

    def stats(self) -> Dict[str, int]:
        entries = self.list()
        return {"items": len(entries), "bytes": sum(e.size for e in entries)}

    # --- mutations ---

    def trash(self, root: RootContext, rels: Iterable[Any], deleted_by: Optional[str] = None) -> BulkReport:
        report = BulkReport()
        by = str(deleted_by or "unknown")
        with file_lock(self.lock_path):
            entries = self._load()
            added: List[TrashEntry] = []
            for raw in rels:
                rel = sanitize(raw)
                try:
                    entry = self._trash_one(root, rel, by)
                except FsError as e:
                    report.fail(rel or str(raw or ""), e)
                    continue
                added.append(entry)
                report.add({"id": entry.id, "name": entry.original_name, "path": rel, "type": entry.kind})
            if added:
                try:
                    self._save(entries + added)
                except FsError:
                    self._rollback(root, added)
                    raise
        return report

    def _trash_one(self, root: RootContext, rel: str, deleted_by: str) -> TrashEntry:
        if not rel:
            raise InvalidName("cannot delete the root folder")
        ap = resolve_entry(root, rel)
        guard_subtree(root, ap, rel)
        if self._is_internal(ap):
            raise PathEscape("cannot delete the trash folder", target=rel)
        kind = "folder" if os.path.isdir(ap) and not os.path.islink(ap) else "file"
        size = tree_size(ap)
        entry_id = new_trash_id()
        try:
            os.rename(ap, self._blob(entry_id))
        except OSError as e:
            raise io_error(e, rel)
        return TrashEntry(
            id=entry_id,
            original_path=rel,
            original_name=split(rel)[1],
            kind=kind,
            size=size,
            deleted_at=int(time.time()),
            deleted_by=deleted_by,
        )

    def _rollback(self, root: RootContext, added: List[TrashEntry]) -> None:
        for entry in added:
            try:
                os.rename(self._blob(entry.id), resolve_entry(root, entry.original_path, must_exist=False))
            except (OSError, FsError) as e:
                _LOG.error(f"trash rollback failed | id={entry.id}, path={entry.original_path}, error={e}")

    def restore(self, root: RootContext, ids: Iterable[Any]) -> BulkReport:
        report = BulkReport()
        with file_lock(self.lock_path):
            by_id = {e.id: e for e in self._load()}
            changed = False
            restored: List[Tuple[str, str]] = []
            for raw in ids:
                eid = str(raw or "").strip()
                entry = by_id.get(eid) if _ID_RE.match(eid) else None
                if entry is None:
                    report.fail(eid, NotFound("not in trash", target=eid))
                    continue
                blob = self._blob(eid)
                if not os.path.lexists(blob):
                    del by_id[eid]
                    changed = True
                    report.fail(eid, NotFound("trashed item is missing; record removed", target=eid))
                    continue
                try:
                    item, dest = self._restore_one(root, entry, blob)
                except FsError as e:
                    report.fail(eid, e)
                    continue
                report.add(item)
                restored.append((eid, dest))
                del by_id[eid]
                changed = True
            if changed:
                try:
                    self._save(by_id.values())
                except FsError:
                    self._unrestore(restored)
                    raise
        return report

    def _unrestore(self, restored: List[Tuple[str, str]]) -> None:
        for entry_id, dest in restored:
            try:
                os.rename(dest, self._blob(entry_id))
            except OSError as e:
                _LOG.error(f"trash restore rollback failed | id={entry_id}, path={dest}, error={e}")

    def _restore_one(self, root: RootContext, entry: TrashEntry, blob: str) -> Tuple[Dict[str, Any], str]:
        rel = sanitize(entry.original_path)
        if not rel:
            raise InvalidName("recorded path is empty", target=entry.id)
        parent_rel, name = split(rel)
        parent = resolve(root, parent_rel, must_exist=False)
        try:
            os.makedirs(parent, 0o775, exist_ok=True)
        except OSError as e:
            raise io_error(e, parent_rel)
        parent = resolve(root, parent_rel)
        final = next_free_name(parent, name, pattern=RESTORE_PATTERN, limit=RESTORE_ATTEMPTS)
        dest = os.path.join(parent, final)
        try:
            os.rename(blob, dest)
        except OSError as e:
            raise io_error(e, rel)
        return {"id": entry.id, "name": final, "path": join(parent_rel, final), "type": entry.kind}, dest

    def delete_permanently(self, ids: Iterable[Any]) -> BulkReport:
        with file_lock(self.lock_path):
            return self._delete_locked([str(x or "").strip() for x in ids])

    def _delete_locked(self, ids: List[str]) -> BulkReport:
        report = BulkReport()
        by_id = {e.id: e for e in self._load()}
        changed = False
        for eid in ids:
            entry = by_id.get(eid) if _ID_RE.match(eid) else None
            if entry is None:
                report.fail(eid, NotFound("not in trash", target=eid))
                continue
            blob = self._blob(eid)
            if os.path.lexists(blob):
                try:
                    remove_tree(blob)
                except FsError as e:
                    report.fail(eid, e)
                    continue
            del by_id[eid]
            changed = True
            report.add({"id": eid, "name": entry.original_name, "type": entry.kind})
        if changed:
            self._save(by_id.values())
        return report

    def empty_all(self) -> BulkReport:
        with file_lock(self.lock_path):
            return self._delete_locked([e.id for e in self._load()])

    def cleanup_older_than(self, days: float, *, now: Optional[float] = None) -> BulkReport:
        """Permanently delete rows trashed at or before ``now - days``."""
        if days < 0:
            raise InvalidRequest("days must not be negative")
        cutoff = (time.time() if now is None else now) - float(days) * SECONDS_PER_DAY
        with file_lock(self.lock_path):
            ids = [e.id for e in self._load() if e.deleted_at <= cutoff]
            return self._delete_locked(ids)

    def purge_expired(self, ttl_days: int, *, min_interval: float = 3600.0) -> Optional[BulkReport]:
        """Apply the retention period, at most once per ``min_interval`` seconds."""
        if ttl_days <= 0:
            return None
        now = time.time()
        with self._maint_lock:
            if now - self._last_purge < min_interval:
                return None
            self._last_purge = now
        return self.cleanup_older_than(ttl_days, now=now)
