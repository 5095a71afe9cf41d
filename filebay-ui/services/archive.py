"""Zip creation and extraction inside the root.

Extraction validates every member name before anything is written: a member
with a ``..`` segment, an absolute path or a drive letter aborts the whole
extraction with ``PathEscape``.
"""

from __future__ import annotations

import os
import re
import shutil
import time
import zipfile
from typing import Any, Dict, Iterable, List, Optional, Tuple

from services.errors import (
    AlreadyExists,
    BulkReport,
    FsError,
    InvalidName,
    InvalidRequest,
    NotFound,
    ParentMissing,
    PathEscape,
    TooLarge,
    UnsupportedType,
    io_error,
)
from services.filestore import (
    BUFFER_SIZE,
    TEMP_PREFIX,
    FileSystemEntry,
    entry_for,
    next_free_name,
    publish_file,
    temp_path,
)
from services.paths import RESERVED_MESSAGE, RootContext, basename, join, parent_of, resolve, sanitize


_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]+")
_DRIVE = re.compile(r"^[A-Za-z]:")


def archive_base_name(rels: List[str], name: Optional[str] = None) -> str:
    if name:
        base = str(name)
        if base.lower().endswith(".zip"):
            base = base[:-4]
    elif len(rels) == 1:
        base = os.path.splitext(basename(rels[0]))[0] or basename(rels[0])
    else:
        base = time.strftime("archive_%Y%m%d_%H%M%S")
    return _UNSAFE_CHARS.sub("_", base).strip("_") or "archive"


def _dest_folder(root: RootContext, rel: str) -> str:
    try:
        d = resolve(root, rel)
    except NotFound:
        raise ParentMissing(target=rel)
    if not os.path.isdir(d):
        raise ParentMissing("destination is not a folder", target=rel)
    return d


def _add_tree(zf: zipfile.ZipFile, root: RootContext, ap: str, arc_base: str) -> None:
    zf.write(ap, arc_base + "/")
    for cur, dirs, files in os.walk(ap):
        dirs[:] = [d for d in dirs if not root.is_reserved(os.path.join(cur, d))]
        arc_cur = os.path.relpath(cur, ap).replace(os.sep, "/")
        arc_cur = arc_base if arc_cur == "." else f"{arc_base}/{arc_cur}"
        for dn in sorted(dirs):
            dp = os.path.join(cur, dn)
            if not os.path.islink(dp):
                zf.write(dp, f"{arc_cur}/{dn}/")
        for fn in sorted(files):
            if fn.startswith(TEMP_PREFIX):
                continue
            fp = os.path.join(cur, fn)
            if root.is_reserved(fp):
                continue
            if os.path.islink(fp) and not root.contains(os.path.realpath(fp)):
                continue
            if not os.path.isfile(fp):
                continue
            zf.write(fp, f"{arc_cur}/{fn}")


def create_zip(
    root: RootContext,
    rels: Iterable[Any],
    dest_dir: Any = None,
    name: Optional[str] = None,
) -> Tuple[FileSystemEntry, BulkReport]:
    """Zip the given entries into ``dest_dir`` (default: folder of the first entry)."""
    report = BulkReport()
    items: List[Tuple[str, str]] = []
    for raw in rels:
        rel = sanitize(raw)
        try:
            if not rel:
                raise InvalidName("cannot archive the root folder")
            items.append((rel, resolve(root, rel)))
        except FsError as e:
            report.fail(rel or str(raw or ""), e)
            continue
        report.add({"path": rel})
    if not items:
        raise InvalidRequest("nothing to archive", errors=[f.to_dict() for f in report.failed])

    dest_rel = sanitize(dest_dir) if dest_dir is not None else parent_of(items[0][0])
    dest = _dest_folder(root, dest_rel)
    final = next_free_name(dest, archive_base_name([r for r, _ in items], name) + ".zip")
    final_rel = join(dest_rel, final)

    tmp = temp_path(dest)
    try:
        with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for rel, ap in items:
                if os.path.isdir(ap):
                    _add_tree(zf, root, ap, basename(rel))
                else:
                    zf.write(ap, basename(rel))
    except OSError as e:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise io_error(e, final_rel)
    publish_file(tmp, os.path.join(dest, final), final_rel)
    return entry_for(root, os.path.join(dest, final)), report


def member_path(name: str) -> str:
    """Validate a zip member name and return it as a relative path.

    Raises ``PathEscape`` for absolute names, drive letters and ``..``.
    """
    n = str(name).replace("\\", "/")
    if n.startswith("/") or _DRIVE.match(n) or "\x00" in n:
        raise PathEscape("archive entry has an absolute path", target=name)
    segs = n.split("/")
    if ".." in segs:
        raise PathEscape("archive entry leaves the destination", target=name)
    return "/".join(s for s in segs if s not in ("", "."))


def _open_zip(root: RootContext, rel: Any) -> Tuple[str, str]:
    rel = sanitize(rel)
    ap = resolve(root, rel)
    if not os.path.isfile(ap) or not zipfile.is_zipfile(ap):
        raise UnsupportedType("not a zip archive", target=rel)
    return rel, ap


def list_zip(root: RootContext, rel: Any) -> List[Dict[str, Any]]:
    rel, ap = _open_zip(root, rel)
    try:
        with zipfile.ZipFile(ap) as zf:
            return [
                {"name": i.filename, "size": i.file_size, "compressed": i.compress_size, "dir": i.is_dir()}
                for i in zf.infolist()
            ]
    except zipfile.BadZipFile as e:
        raise UnsupportedType(str(e), target=rel)


def extract_zip(
    root: RootContext,
    rel: Any,
    dest_dir: Any = None,
    *,
    max_bytes: Optional[int] = None,
) -> Dict[str, Any]:
    """Extract a zip archive.

    Without ``dest_dir`` a new folder named after the archive is created next
    to it. Existing files are never overwritten; such members are reported
    in ``skipped``.
    """
    rel, ap = _open_zip(root, rel)
    try:
        zf = zipfile.ZipFile(ap)
    except zipfile.BadZipFile as e:
        raise UnsupportedType(str(e), target=rel)
    with zf:
        members: List[Tuple[zipfile.ZipInfo, str]] = []
        declared = 0
        for info in zf.infolist():
            clean = member_path(info.filename)
            declared += int(info.file_size)
            if clean:
                members.append((info, clean))
        if max_bytes is not None and declared > max_bytes:
            raise TooLarge("archive is too large to extract", target=rel, max_bytes=int(max_bytes))

        if dest_dir is None:
            parent_rel = parent_of(rel)
            parent = _dest_folder(root, parent_rel)
            stem = os.path.splitext(basename(rel))[0] or "archive"
            dest_rel = join(parent_rel, next_free_name(parent, stem))
            dest = os.path.join(parent, basename(dest_rel))
            try:
                os.mkdir(dest, 0o775)
            except FileExistsError:
                raise AlreadyExists(target=dest_rel)
            except OSError as e:
                raise io_error(e, dest_rel)
        else:
            dest_rel = sanitize(dest_dir)
            dest = _dest_folder(root, dest_rel)
            for _info, clean in members:
                if root.is_reserved(os.path.join(dest, *clean.split("/"))):
                    raise PathEscape(RESERVED_MESSAGE, target=join(dest_rel, clean))

        report = BulkReport()
        for info, clean in members:
            target_rel = join(dest_rel, clean)
            target = os.path.join(dest, *clean.split("/"))
            try:
                _extract_member(root, zf, info, target, target_rel)
            except FsError as e:
                if e.code == "path_escape":
                    raise
                report.fail(target_rel, e)
                continue
            if not info.is_dir():
                report.add({"path": target_rel, "size": int(info.file_size)})

    return {
        "folder": entry_for(root, dest).to_dict(),
        "extracted": len(report.succeeded),
        "files": report.succeeded,
        "skipped": [f.to_dict() for f in report.failed],
    }


def _extract_member(root: RootContext, zf: zipfile.ZipFile, info: zipfile.ZipInfo, target: str, target_rel: str) -> None:
    parent = target if info.is_dir() else os.path.dirname(target)
    try:
        os.makedirs(parent, 0o775, exist_ok=True)
    except OSError as e:
        raise io_error(e, target_rel)
    # A pre-existing symlink on the way could point outside.
    real_parent = os.path.realpath(parent)
    if not root.contains(real_parent) or root.is_reserved(real_parent):
        raise PathEscape(target=target_rel)
    if info.is_dir():
        return
    if os.path.lexists(target):
        raise AlreadyExists(target=target_rel)
    tmp = temp_path(parent)
    try:
        with zf.open(info) as src, open(tmp, "wb") as out:
            shutil.copyfileobj(src, out, BUFFER_SIZE)
    except (OSError, zipfile.BadZipFile) as e:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise io_error(e, target_rel) if isinstance(e, OSError) else UnsupportedType(str(e), target=target_rel)
    publish_file(tmp, target, target_rel)
