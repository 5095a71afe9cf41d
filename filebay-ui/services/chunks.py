"""Chunked upload staging and assembly.

An upload is identified by a deterministic key derived from the root, the
destination folder and the original file name, so a client retrying a chunk
lands in the same staging set. Chunks are streamed to temp files without a
lock; placing a chunk into its slot, the completeness check and the assembly
itself run under a per-key flock in the staging directory.

Staging layout::

    <staging>/<key>/manifest.json   declared total, name, destination
    <staging>/<key>/chunk.<index>   one file per received index
    <staging>/<key>.lock            per-key lock file
    <staging>/<key>.done            written after a successful assembly
"""

from __future__ import annotations

import hashlib
import os
import shutil
import threading
import time
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, Optional, Set, Tuple

from services.errors import (
    AlreadyExists,
    ChunkMissing,
    FsError,
    InvalidRequest,
    NameInUse,
    NotFound,
    ParentMissing,
    io_error,
)
from services.fileio import file_lock, read_json, write_json
from services.filestore import (
    BUFFER_SIZE,
    FileSystemEntry,
    entry_for,
    next_free_name,
    publish_file,
    remove_tree,
    temp_path,
    write_stream_temp,
)
from services.paths import RootContext, join, parent_of, resolve, sanitize, validate_name


MANIFEST_NAME = "manifest.json"
CHUNK_PREFIX = "chunk."


@dataclass
class ChunkResult:
    finished: bool
    received: int
    total: int
    entry: Optional[FileSystemEntry] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "finished": self.finished,
            "received": self.received,
            "total": self.total,
            "file": self.entry.to_dict() if self.entry else None,
        }


@dataclass(frozen=True)
class UploadTarget:
    name: str
    dest_dir: str
    folder_upload: bool


class ChunkAssembler:
    def __init__(
        self,
        root: RootContext,
        staging_dir: str,
        *,
        max_chunk_bytes: Optional[int] = None,
        done_ttl: int = 120,
    ) -> None:
        self.root = root
        self.staging_dir = os.path.abspath(staging_dir)
        self.max_chunk_bytes = max_chunk_bytes
        self.done_ttl = int(done_ttl)
        self._purge_lock = threading.Lock()
        self._last_purge = 0.0
        os.makedirs(self.staging_dir, exist_ok=True)

    # --- keys and targets ---

    def target(self, dest_dir: Any, original_name: Any, relative_path: Any = None) -> UploadTarget:
        """Work out where the assembled file goes.

        With a ``relative_path`` (folder upload, may be empty) the file lands in the
        sub-folder it names; a trailing segment equal to the file name is
        ignored so browser-provided relative paths work as is.
        """
        name = validate_name(os.path.basename(str(original_name or "").replace("\\", "/")))
        dest = sanitize(dest_dir)
        folder_upload = relative_path is not None
        if folder_upload:
            sub = sanitize(relative_path)
            if sub == name or sub.endswith("/" + name):
                sub = parent_of(sub)
            if sub:
                dest = join(dest, sub)
        return UploadTarget(name=name, dest_dir=dest, folder_upload=folder_upload)

    def upload_key(self, dest_dir: str, name: str) -> str:
        raw = "\x00".join((self.root.path, dest_dir, name))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def _key_paths(self, key: str) -> Tuple[str, str, str]:
        base = os.path.join(self.staging_dir, key)
        return base, base + ".lock", base + ".done"

    # --- public API ---

    def receive(
        self,
        dest_dir: Any,
        original_name: Any,
        chunk_index: int,
        total_chunks: int,
        stream: BinaryIO,
        relative_path: Any = None,
    ) -> ChunkResult:
        """Store one chunk and assemble the file if it was the last missing one."""
        target = self.store_chunk(dest_dir, original_name, chunk_index, total_chunks, stream, relative_path)
        return self._assemble_target(target)

    def store_chunk(
        self,
        dest_dir: Any,
        original_name: Any,
        chunk_index: int,
        total_chunks: int,
        stream: BinaryIO,
        relative_path: Any = None,
    ) -> UploadTarget:
        target = self.target(dest_dir, original_name, relative_path)
        index, total = int(chunk_index), int(total_chunks)
        if total < 1:
            raise InvalidRequest("totalChunks must be at least 1", target=target.name)
        if not 0 <= index < total:
            raise InvalidRequest("chunkIndex is out of range", target=target.name, chunkIndex=index, totalChunks=total)

        self._check_destination(target)
        key = self.upload_key(target.dest_dir, target.name)
        kdir, lock_path, _done_path = self._key_paths(key)

        tmp, _size = write_stream_temp(stream, self.staging_dir, max_bytes=self.max_chunk_bytes)
        try:
            with file_lock(lock_path):
                if os.path.isdir(kdir):
                    expected = self._read_total(kdir)
                    if expected != total and index == 0:
                        # A first chunk with a new count starts the upload over.
                        remove_tree(kdir)
                    elif expected != total:
                        raise InvalidRequest(
                            "totalChunks does not match the upload in progress",
                            target=target.name, expected=expected, totalChunks=total,
                        )
                if not os.path.isdir(kdir):
                    os.makedirs(kdir)
                    write_json(os.path.join(kdir, MANIFEST_NAME), {
                        "total": total,
                        "name": target.name,
                        "dest": target.dest_dir,
                        "folder_upload": target.folder_upload,
                        "created": int(time.time()),
                    })
                os.replace(tmp, os.path.join(kdir, f"{CHUNK_PREFIX}{index}"))
        except FsError:
            _unlink_quiet(tmp)
            raise
        except OSError as e:
            _unlink_quiet(tmp)
            raise io_error(e, target.name)
        return target

    def assemble(self, dest_dir: Any, original_name: Any, relative_path: Any = None) -> ChunkResult:
        """Assemble the upload if all chunks are present.

        Safe to call concurrently: only one caller writes the file, later
        callers get the finished result from the done marker.
        """
        return self._assemble_target(self.target(dest_dir, original_name, relative_path))

    def purge_stale(self, max_age_seconds: float) -> int:
        """Remove staging sets, temp parts and markers untouched for ``max_age_seconds``."""
        now = time.time()
        removed = 0
        try:
            entries = list(os.scandir(self.staging_dir))
        except FileNotFoundError:
            return 0
        for entry in entries:
            try:
                age = now - entry.stat(follow_symlinks=False).st_mtime
            except FileNotFoundError:
                continue
            if age < max_age_seconds:
                continue
            if entry.is_dir(follow_symlinks=False):
                with file_lock(entry.path + ".lock"):
                    if os.path.isdir(entry.path):
                        remove_tree(entry.path)
                        removed += 1
            elif entry.name.endswith(".lock"):
                # flock leaves mtime alone; only an unheld lock without a staging set goes.
                with file_lock(entry.path):
                    if os.path.isdir(entry.path[:-len(".lock")]):
                        continue
                    _unlink_quiet(entry.path)
                    removed += 1
            else:
                _unlink_quiet(entry.path)
                removed += 1
        return removed

    def maybe_purge(self, max_age_seconds: float, *, interval: float = 3600.0) -> int:
        """Run ``purge_stale`` at most once per ``interval`` seconds in this process."""
        now = time.time()
        with self._purge_lock:
            if now - self._last_purge < interval:
                return 0
            self._last_purge = now
        return self.purge_stale(max_age_seconds)

    # --- internals ---

    def _read_total(self, kdir: str) -> int:
        try:
            manifest = read_json(os.path.join(kdir, MANIFEST_NAME), {})
            return int(manifest.get("total") or 0)
        except ValueError:
            return 0

    def _read_done(self, key: str) -> Optional[Dict[str, Any]]:
        _kdir, _lock, done_path = self._key_paths(key)
        try:
            st = os.stat(done_path)
        except FileNotFoundError:
            return None
        if time.time() - st.st_mtime > self.done_ttl:
            return None
        try:
            done = read_json(done_path, None)
        except ValueError:
            return None
        if not isinstance(done, dict) or not os.path.lexists(str(done.get("abs") or "")):
            return None
        return done

    def _present(self, kdir: str, total: int) -> Set[int]:
        present: Set[int] = set()
        for name in os.listdir(kdir):
            if not name.startswith(CHUNK_PREFIX):
                continue
            try:
                i = int(name[len(CHUNK_PREFIX):])
            except ValueError:
                continue
            if 0 <= i < total:
                present.add(i)
        return present

    def _check_destination(self, target: UploadTarget) -> None:
        """Fail fast on a destination that assembly could never use.

        Single-file uploads need an existing folder. Folder uploads need every
        existing prefix of the sub-path to be a folder inside the root; missing
        folders are created at assembly.
        """
        if not target.folder_upload:
            self._dest_folder(target)
            return
        cur = ""
        for seg in target.dest_dir.split("/") if target.dest_dir else []:
            cur = join(cur, seg)
            p = resolve(self.root, cur, must_exist=False)
            if not os.path.exists(p):
                return
            if not os.path.isdir(p):
                raise NameInUse("a file with this name already exists", target=cur)

    def _dest_folder(self, target: UploadTarget) -> str:
        if not target.folder_upload:
            try:
                d = resolve(self.root, target.dest_dir)
            except NotFound:
                raise ParentMissing(target=target.dest_dir)
            if not os.path.isdir(d):
                raise ParentMissing("destination is not a folder", target=target.dest_dir)
            return d
        cur = ""
        for seg in target.dest_dir.split("/") if target.dest_dir else []:
            cur = join(cur, seg)
            p = resolve(self.root, cur, must_exist=False)
            if os.path.isdir(p):
                continue
            try:
                os.mkdir(p, 0o775)
            except FileExistsError:
                raise NameInUse("a file with this name already exists", target=cur)
            except OSError as e:
                raise io_error(e, cur)
        return resolve(self.root, target.dest_dir)

    def _assemble_target(self, target: UploadTarget) -> ChunkResult:
        key = self.upload_key(target.dest_dir, target.name)
        kdir, lock_path, done_path = self._key_paths(key)
        with file_lock(lock_path):
            if not os.path.isdir(kdir):
                done = self._read_done(key)
                if done is None:
                    raise NotFound("no upload in progress", target=target.name)
                total = int(done.get("total") or 0)
                return ChunkResult(True, total, total, entry_for(self.root, str(done["abs"])))

            total = self._read_total(kdir)
            present = self._present(kdir, total)
            if total < 1 or len(present) < total:
                return ChunkResult(False, len(present), total)

            dest_dir = self._dest_folder(target)
            if target.folder_upload:
                final_name = next_free_name(dest_dir, target.name)
            else:
                final_name = target.name
                if os.path.lexists(os.path.join(dest_dir, final_name)):
                    raise AlreadyExists(target=join(target.dest_dir, final_name))
            final_rel = join(target.dest_dir, final_name)
            dest = os.path.join(dest_dir, final_name)

            tmp = temp_path(dest_dir)
            try:
                with open(tmp, "wb") as out:
                    for i in range(total):
                        part = os.path.join(kdir, f"{CHUNK_PREFIX}{i}")
                        try:
                            src = open(part, "rb")
                        except OSError as e:
                            raise ChunkMissing(e.strerror or None, target=target.name, index=i)
                        with src:
                            shutil.copyfileobj(src, out, BUFFER_SIZE)
                    out.flush()
                    os.fsync(out.fileno())
            except FsError:
                _unlink_quiet(tmp)
                raise
            except OSError as e:
                _unlink_quiet(tmp)
                raise io_error(e, final_rel)

            publish_file(tmp, dest, final_rel)
            write_json(done_path, {"path": final_rel, "abs": dest, "total": total, "at": int(time.time())})
            remove_tree(kdir)
            return ChunkResult(True, total, total, entry_for(self.root, dest))


def _unlink_quiet(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
