"""Single-entry filesystem operations confined to the root.

Every public function takes the ``RootContext`` first and a client path
second; paths are sanitized and resolved here, so callers never touch raw
input. Mutations rely on one atomic primitive each: ``os.rename`` for
rename/move, temp file plus no-clobber link for new files, and temp file plus
``os.replace`` for edits.
"""

from __future__ import annotations

import codecs
import errno
import fcntl
import os
import stat
import uuid
from dataclasses import asdict, dataclass
from typing import Any, BinaryIO, Dict, Iterable, Optional, Tuple, Union

from services.errors import (
    AlreadyExists,
    BulkReport,
    CannotDisambiguate,
    FsError,
    InvalidName,
    InvalidRequest,
    IOFailure,
    NameInUse,
    NotFound,
    NotReadable,
    NotWritable,
    ParentMissing,
    PathEscape,
    RecursiveMove,
    SelfMove,
    TooLarge,
    UnsupportedType,
    io_error,
)
from services.paths import (
    RESERVED_MESSAGE,
    RootContext,
    basename,
    guard_subtree,
    is_inside,
    join,
    resolve,
    resolve_entry,
    sanitize,
    split,
    validate_name,
)


DEFAULT_EDITABLE_EXTENSIONS: Tuple[str, ...] = (
    "txt", "md", "markdown", "yml", "yaml", "json", "xml", "html", "htm",
    "css", "scss", "less", "js", "ts", "tsx", "jsx", "ini", "conf", "cfg",
    "env", "log", "php", "phtml", "sql", "csv",
)
DEFAULT_MAX_EDIT_BYTES = 256 * 1024
BUFFER_SIZE = 64 * 1024

# Hidden temp files created while publishing; the lister skips them.
TEMP_PREFIX = ".filebay-"


@dataclass
class FileSystemEntry:
    name: str
    path: str
    type: str
    size: Optional[int]
    modified: int
    link: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TextDocument:
    path: str
    content: str
    encoding: str
    size: int
    modified: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def entry_for(root: RootContext, abs_path: str) -> FileSystemEntry:
    """Describe ``abs_path``; symlinks report their target's type and size."""
    rel = root.relative(abs_path)
    try:
        lst = os.lstat(abs_path)
    except OSError as e:
        raise io_error(e, rel)
    st = lst
    is_link = stat.S_ISLNK(lst.st_mode)
    if is_link:
        try:
            st = os.stat(abs_path)
        except OSError:
            # dangling link
            st = lst
    is_dir = stat.S_ISDIR(st.st_mode)
    return FileSystemEntry(
        name=os.path.basename(abs_path) if rel else "",
        path=rel,
        type="folder" if is_dir else "file",
        size=None if is_dir else int(st.st_size),
        modified=int(st.st_mtime),
        link=is_link,
    )


def file_extension(name: str) -> str:
    """Lowercased text after the last dot (``.htaccess`` -> ``htaccess``)."""
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[1].lower()


def check_extension(name: str, allowed: Iterable[str], target: Optional[str] = None) -> None:
    allowed_set = {str(x).strip().lower().lstrip(".") for x in allowed}
    if "*" in allowed_set:
        return
    if file_extension(name) not in allowed_set:
        raise UnsupportedType("file type is not editable", target=target)


def temp_path(directory: str) -> str:
    return os.path.join(directory, f"{TEMP_PREFIX}{uuid.uuid4().hex}.part")


def _unlink_quiet(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def write_stream_temp(stream: BinaryIO, directory: str, *, max_bytes: Optional[int] = None) -> Tuple[str, int]:
    """Copy ``stream`` into a new temp file inside ``directory``.

    Reads in bounded blocks; raises ``TooLarge`` (and removes the temp file)
    once ``max_bytes`` is exceeded. Returns ``(temp_path, bytes_written)``.
    """
    tmp = temp_path(directory)
    total = 0
    try:
        with open(tmp, "wb") as out:
            while True:
                block = stream.read(BUFFER_SIZE)
                if not block:
                    break
                total += len(block)
                if max_bytes is not None and total > max_bytes:
                    raise TooLarge("upload is too large", max_bytes=int(max_bytes))
                out.write(block)
            out.flush()
            os.fsync(out.fileno())
    except FsError:
        _unlink_quiet(tmp)
        raise
    except OSError as e:
        _unlink_quiet(tmp)
        raise io_error(e)
    return tmp, total


def _write_temp_bytes(directory: str, data: bytes) -> str:
    tmp = temp_path(directory)
    try:
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
    except OSError:
        _unlink_quiet(tmp)
        raise
    return tmp


def publish_file(tmp: str, dest: str, target: Optional[str] = None) -> None:
    """Move a finished temp file to ``dest`` without ever replacing an existing entry."""
    try:
        os.link(tmp, dest)
    except FileExistsError:
        _unlink_quiet(tmp)
        raise AlreadyExists(target=target)
    except OSError as e:
        if e.errno not in (errno.EPERM, errno.EXDEV, errno.EMLINK, errno.ENOTSUP, errno.EOPNOTSUPP):
            _unlink_quiet(tmp)
            raise io_error(e, target)
        # No hard links on this filesystem.
        if os.path.lexists(dest):
            _unlink_quiet(tmp)
            raise AlreadyExists(target=target)
        try:
            os.rename(tmp, dest)
        except OSError as e2:
            _unlink_quiet(tmp)
            raise io_error(e2, target)
        return
    _unlink_quiet(tmp)


def next_free_name(directory: str, name: str, *, pattern: str = "{stem}_{n}{ext}", limit: int = 10000) -> str:
    """Return ``name`` or the first ``pattern`` variant that does not exist in ``directory``."""
    if not os.path.lexists(os.path.join(directory, name)):
        return name
    stem, ext = os.path.splitext(name)
    for n in range(1, limit):
        cand = pattern.format(stem=stem, n=n, ext=ext)
        if not os.path.lexists(os.path.join(directory, cand)):
            return cand
    raise CannotDisambiguate(target=name)


def tree_size(path: str) -> int:
    """Bytes used by ``path``; directories are summed without following symlinks."""
    try:
        st = os.lstat(path)
    except OSError:
        return 0
    if not stat.S_ISDIR(st.st_mode):
        return int(st.st_size)
    total = 0
    for cur, dirs, files in os.walk(path):
        for fn in files:
            try:
                total += int(os.lstat(os.path.join(cur, fn)).st_size)
            except OSError:
                continue
    return total


def _prepare_creation_target(root: RootContext, rel: Any) -> Tuple[str, str]:
    rel = sanitize(rel)
    if not rel:
        raise InvalidName("name is required")
    parent_rel, name = split(rel)
    validate_name(name)
    try:
        parent = resolve(root, parent_rel)
    except NotFound:
        raise ParentMissing(target=parent_rel)
    if not os.path.isdir(parent):
        raise ParentMissing("parent is not a folder", target=parent_rel)
    if not os.access(parent, os.W_OK | os.X_OK):
        raise NotWritable("parent folder is not writable", target=parent_rel)
    target = os.path.join(parent, name)
    if root.is_reserved(target):
        raise PathEscape(RESERVED_MESSAGE, target=rel)
    if os.path.lexists(target):
        raise AlreadyExists(target=rel)
    return target, rel


def create_folder(root: RootContext, rel: Any) -> FileSystemEntry:
    target, rel = _prepare_creation_target(root, rel)
    try:
        os.mkdir(target, 0o775)
    except FileExistsError:
        raise AlreadyExists(target=rel)
    except OSError as e:
        raise io_error(e, rel)
    return entry_for(root, target)


def create_file(root: RootContext, rel: Any, content: Union[str, bytes, None] = b"") -> FileSystemEntry:
    target, rel = _prepare_creation_target(root, rel)
    data = content.encode("utf-8") if isinstance(content, str) else bytes(content or b"")
    try:
        tmp = _write_temp_bytes(os.path.dirname(target), data)
    except OSError as e:
        raise io_error(e, rel)
    publish_file(tmp, target, rel)
    return entry_for(root, target)


def save_stream(
    root: RootContext,
    dir_rel: Any,
    filename: Any,
    stream: BinaryIO,
    *,
    max_bytes: Optional[int] = None,
) -> FileSystemEntry:
    """Store an uploaded stream as ``dir_rel/filename``; existing files are never replaced."""
    name = validate_name(os.path.basename(str(filename or "").replace("\\", "/")))
    target, rel = _prepare_creation_target(root, join(sanitize(dir_rel), name))
    tmp, _total = write_stream_temp(stream, os.path.dirname(target), max_bytes=max_bytes)
    publish_file(tmp, target, rel)
    return entry_for(root, target)


_BOMS = (
    (codecs.BOM_UTF32_LE, "utf-32", "UTF-32"),
    (codecs.BOM_UTF32_BE, "utf-32", "UTF-32"),
    (codecs.BOM_UTF8, "utf-8-sig", "UTF-8"),
    (codecs.BOM_UTF16_LE, "utf-16", "UTF-16"),
    (codecs.BOM_UTF16_BE, "utf-16", "UTF-16"),
)


def _guess_wide_codec(raw: bytes) -> Optional[str]:
    sample = raw[:4096]
    n = len(sample)
    if n < 4 or b"\x00" not in sample:
        return None
    if n % 4 == 0:
        quads = n // 4
        le = sum(1 for i in range(0, n, 4) if sample[i + 1:i + 4] == b"\x00\x00\x00")
        be = sum(1 for i in range(0, n, 4) if sample[i:i + 3] == b"\x00\x00\x00")
        if le * 2 > quads:
            return "utf-32-le"
        if be * 2 > quads:
            return "utf-32-be"
    if n % 2 == 0:
        pairs = n // 2
        le = sum(1 for i in range(1, n, 2) if sample[i] == 0)
        be = sum(1 for i in range(0, n, 2) if sample[i] == 0)
        if le * 2 > pairs:
            return "utf-16-le"
        if be * 2 > pairs:
            return "utf-16-be"
    return None


def decode_text(raw: bytes) -> Tuple[str, str]:
    """Best-effort decoding to str. Returns ``(text, detected_encoding)``."""
    for bom, codec, label in _BOMS:
        if raw.startswith(bom):
            try:
                return raw.decode(codec), label
            except UnicodeDecodeError:
                break
    # NUL bytes are valid UTF-8, so BOM-less UTF-16/32 has to be ruled out first.
    wide = _guess_wide_codec(raw)
    if wide:
        try:
            return raw.decode(wide), wide[:6].upper()
        except UnicodeDecodeError:
            pass
    try:
        return raw.decode("utf-8"), "UTF-8"
    except UnicodeDecodeError:
        pass
    return raw.decode("iso-8859-1"), "ISO-8859-1"


def read_text(
    root: RootContext,
    rel: Any,
    allowed_extensions: Iterable[str] = DEFAULT_EDITABLE_EXTENSIONS,
    max_bytes: int = DEFAULT_MAX_EDIT_BYTES,
) -> TextDocument:
    rel = sanitize(rel)
    ap = resolve(root, rel)
    if not os.path.isfile(ap):
        raise UnsupportedType("not a regular file", target=rel)
    check_extension(basename(rel), allowed_extensions, rel)
    try:
        st = os.stat(ap)
    except OSError as e:
        raise io_error(e, rel)
    if st.st_size > max_bytes:
        raise TooLarge("file is too large to edit", target=rel, max_bytes=int(max_bytes))
    try:
        with open(ap, "rb") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_SH)
            try:
                raw = f.read(max_bytes + 1)
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
    except PermissionError as e:
        raise NotReadable(e.strerror, target=rel)
    except OSError as e:
        raise io_error(e, rel)
    if len(raw) > max_bytes:
        raise TooLarge("file is too large to edit", target=rel, max_bytes=int(max_bytes))
    text, encoding = decode_text(raw)
    return TextDocument(path=rel, content=text, encoding=encoding, size=len(raw), modified=int(st.st_mtime))


def _apply_metadata(dst_path: str, st0: os.stat_result) -> None:
    """Carry mode/owner of the replaced file over to its replacement."""
    os.chmod(dst_path, stat.S_IMODE(st0.st_mode))
    try:
        os.chown(dst_path, st0.st_uid, st0.st_gid)
    except PermissionError:
        # Only root may give files away; keep our own ownership then.
        pass


def write_text(
    root: RootContext,
    rel: Any,
    content: Any,
    allowed_extensions: Iterable[str] = DEFAULT_EDITABLE_EXTENSIONS,
    max_bytes: int = DEFAULT_MAX_EDIT_BYTES,
) -> FileSystemEntry:
    """Replace the content of an existing text file.

    The current file is held under an exclusive flock while the new content
    is written to a temp file and swapped in with ``os.replace``; concurrent
    readers see either the old or the new content.
    """
    rel = sanitize(rel)
    ap = resolve(root, rel)
    if not os.path.isfile(ap):
        raise UnsupportedType("not a regular file", target=rel)
    check_extension(basename(rel), allowed_extensions, rel)
    if not isinstance(content, str):
        raise InvalidRequest("content must be a string", target=rel)
    raw = content.encode("utf-8")
    if len(raw) > max_bytes:
        raise TooLarge("content is too large", target=rel, max_bytes=int(max_bytes))
    directory = os.path.dirname(ap)
    if not os.access(ap, os.W_OK) or not os.access(directory, os.W_OK | os.X_OK):
        raise NotWritable("file is not writable", target=rel)
    try:
        with open(ap, "rb") as cur:
            fcntl.flock(cur.fileno(), fcntl.LOCK_EX)
            try:
                st0 = os.fstat(cur.fileno())
                tmp = _write_temp_bytes(directory, raw)
                try:
                    _apply_metadata(tmp, st0)
                    os.replace(tmp, ap)
                except OSError:
                    _unlink_quiet(tmp)
                    raise
            finally:
                fcntl.flock(cur.fileno(), fcntl.LOCK_UN)
    except PermissionError as e:
        raise NotWritable(e.strerror, target=rel)
    except OSError as e:
        raise io_error(e, rel)
    return entry_for(root, ap)


def rename(root: RootContext, rel: Any, new_name: Any) -> FileSystemEntry:
    rel = sanitize(rel)
    if not rel:
        raise InvalidName("cannot rename the root folder")
    name = validate_name(new_name)
    src = resolve_entry(root, rel)
    guard_subtree(root, src, rel)
    dst = os.path.join(os.path.dirname(src), name)
    if dst == src:
        return entry_for(root, src)
    if os.path.lexists(dst):
        raise NameInUse(target=join(split(rel)[0], name))
    try:
        os.rename(src, dst)
    except OSError as e:
        raise io_error(e, rel)
    return entry_for(root, dst)


def move(root: RootContext, rel: Any, new_rel: Any) -> FileSystemEntry:
    """Move ``rel`` to the full destination path ``new_rel`` with one rename."""
    src_rel = sanitize(rel)
    dst_rel = sanitize(new_rel)
    if not src_rel:
        raise InvalidName("cannot move the root folder")
    if not dst_rel:
        raise InvalidName("destination is required")
    if src_rel == dst_rel:
        raise SelfMove(target=src_rel)
    if is_inside(dst_rel, src_rel):
        raise RecursiveMove(target=src_rel)

    src = resolve_entry(root, src_rel)
    guard_subtree(root, src, src_rel)
    dst_parent_rel, dst_name = split(dst_rel)
    try:
        dst_parent = resolve(root, dst_parent_rel)
    except NotFound:
        raise ParentMissing(target=dst_parent_rel)
    if not os.path.isdir(dst_parent):
        raise ParentMissing("destination parent is not a folder", target=dst_parent_rel)
    if not os.access(dst_parent, os.W_OK | os.X_OK):
        raise NotWritable("destination folder is not writable", target=dst_parent_rel)
    dst = os.path.join(dst_parent, dst_name)
    if os.path.lexists(dst):
        raise NameInUse(target=dst_rel)

    # Symlinked folders can hide a move into the source from the lexical check.
    if os.path.isdir(src) and not os.path.islink(src):
        real_src = os.path.realpath(src)
        if dst_parent == real_src or dst_parent.startswith(real_src + os.sep):
            raise RecursiveMove(target=src_rel)

    try:
        os.rename(src, dst)
    except OSError as e:
        raise io_error(e, src_rel)
    return entry_for(root, dst)


def move_many(root: RootContext, sources: Iterable[Any], target_dir: Any) -> BulkReport:
    """Move each source into ``target_dir`` keeping its name."""
    report = BulkReport()
    target_rel = sanitize(target_dir)
    for raw in sources:
        src_rel = sanitize(raw)
        try:
            if not src_rel:
                raise InvalidName("cannot move the root folder")
            entry = move(root, src_rel, join(target_rel, basename(src_rel)))
        except FsError as e:
            report.fail(src_rel or str(raw or ""), e)
            continue
        item = entry.to_dict()
        item["from"] = src_rel
        report.add(item)
    return report


def _raise_walk_error(err: OSError) -> None:
    raise err


def remove_tree(abs_path: str) -> None:
    """Delete ``abs_path`` recursively, children first.

    Symlinks are unlinked, never followed. The first failure raises
    ``IOFailure``; entries already removed stay removed.
    """
    try:
        if os.path.islink(abs_path) or not os.path.isdir(abs_path):
            os.unlink(abs_path)
            return
        for cur, dirs, files in os.walk(abs_path, topdown=False, onerror=_raise_walk_error):
            for fn in files:
                _unlink_quiet(os.path.join(cur, fn))
            for dn in dirs:
                p = os.path.join(cur, dn)
                if os.path.islink(p):
                    _unlink_quiet(p)
                else:
                    os.rmdir(p)
        os.rmdir(abs_path)
    except OSError as e:
        raise IOFailure(e.strerror or str(e), target=os.path.basename(abs_path))
