"""Root-confined path handling.

All client-supplied paths go through ``sanitize`` and then ``resolve`` (or
``resolve_entry`` when the entry itself is the object of the operation).
Past this module paths are either normalized relative paths using ``/`` or
absolute paths that were verified to live under the root.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Iterable, List, Tuple
from urllib.parse import unquote

from services.errors import InvalidName, NotFound, PathEscape


RESERVED_MESSAGE = "path is reserved for internal use"


@dataclass(frozen=True)
class RootContext:
    """Canonical absolute path of the managed root directory.

    ``reserved`` holds canonical paths of internal data (trash, upload
    staging, logs) configured inside the root. Clients can neither reach
    them nor move or delete a folder that contains one.
    """

    path: str
    reserved: Tuple[str, ...] = ()

    @classmethod
    def from_path(cls, path: str, reserved: Iterable[str] = ()) -> "RootContext":
        rp = _canonical(path)
        if not os.path.isdir(rp):
            raise NotFound("root directory does not exist", target=str(path))
        inside: List[str] = []
        for r in reserved:
            rr = _canonical(r)
            if rr != rp and rr.startswith(rp.rstrip(os.sep) + os.sep) and rr not in inside:
                inside.append(rr)
        return cls(rp, tuple(inside))

    def contains(self, abs_path: str) -> bool:
        ap = os.path.normpath(abs_path)
        if ap == self.path:
            return True
        return ap.startswith(self.path.rstrip(os.sep) + os.sep)

    def relative(self, abs_path: str) -> str:
        """Return the ``/``-separated path of ``abs_path`` relative to the root."""
        rel = os.path.relpath(os.path.normpath(abs_path), self.path)
        if rel == os.curdir:
            return ""
        return rel.replace(os.sep, "/")

    def is_reserved(self, abs_path: str) -> bool:
        """True when ``abs_path`` is a reserved path or lies inside one."""
        ap = os.path.normpath(abs_path)
        return any(ap == r or ap.startswith(r + os.sep) for r in self.reserved)

    def holds_reserved(self, abs_path: str) -> bool:
        """True when a reserved path lies strictly below ``abs_path``."""
        prefix = os.path.normpath(abs_path).rstrip(os.sep) + os.sep
        return any(r.startswith(prefix) for r in self.reserved)


def _canonical(path: Any) -> str:
    return os.path.realpath(os.path.abspath(os.path.expanduser(str(path))))


def _decode(raw: str) -> str:
    # Decode until stable so double-encoded input cannot resurface later.
    s = raw.replace("\x00", "")
    while True:
        d = unquote(s).replace("\x00", "")
        if d == s:
            return s
        s = d


def sanitize(raw: Any) -> str:
    """Normalize a client path into a relative path without ``.``/``..``.

    ``..`` pops the previously accepted segment instead of being rejected, so
    ``a/../b`` and ``../b`` both become ``b``.
    """
    s = _decode(str(raw or "")).replace("\\", "/")
    parts: List[str] = []
    for seg in s.split("/"):
        if seg in ("", "."):
            continue
        if seg == "..":
            if parts:
                parts.pop()
            continue
        parts.append(seg)
    return "/".join(parts)


def resolve(root: RootContext, rel: Any, *, must_exist: bool = True) -> str:
    """Resolve ``rel`` under ``root`` following symlinks.

    Containment is checked on the canonical path, so a symlink inside the
    root pointing elsewhere raises ``PathEscape``. A missing target raises
    ``NotFound`` unless ``must_exist`` is false.
    """
    rel = sanitize(rel)
    candidate = os.path.join(root.path, *rel.split("/")) if rel else root.path
    real = os.path.realpath(candidate)
    if not root.contains(real):
        raise PathEscape(target=rel)
    if root.is_reserved(real):
        raise PathEscape(RESERVED_MESSAGE, target=rel)
    if must_exist and not os.path.exists(real):
        raise NotFound(target=rel)
    return real


def resolve_entry(root: RootContext, rel: Any, *, must_exist: bool = True) -> str:
    """Resolve ``rel`` without following its last segment.

    The parent is canonicalized and must be inside the root; the entry itself
    may be a symlink (even a dangling one).
    """
    rel = sanitize(rel)
    if not rel:
        return root.path
    parent_rel, name = split(rel)
    parent = resolve(root, parent_rel, must_exist=must_exist)
    ap = os.path.join(parent, name)
    if root.is_reserved(ap):
        raise PathEscape(RESERVED_MESSAGE, target=rel)
    if must_exist and not os.path.lexists(ap):
        raise NotFound(target=rel)
    return ap


def guard_subtree(root: RootContext, abs_path: str, rel: str) -> None:
    """Refuse to move or delete ``abs_path`` when internal data lives below it."""
    if root.holds_reserved(abs_path):
        raise PathEscape("folder contains internal data", target=rel)


def validate_name(name: Any) -> str:
    """Validate a single path segment and return it stripped."""
    s = str(name or "").strip()
    if not s:
        raise InvalidName("name is required")
    if s in (".", ".."):
        raise InvalidName("name is not allowed", target=s)
    if "/" in s or "\\" in s or "\x00" in s:
        raise InvalidName("name must not contain path separators", target=s)
    return s


def split(rel: str) -> Tuple[str, str]:
    if "/" not in rel:
        return "", rel
    parent, _, name = rel.rpartition("/")
    return parent, name


def join(rel: str, name: str) -> str:
    return f"{rel}/{name}" if rel else name


def basename(rel: str) -> str:
    return split(rel)[1]


def parent_of(rel: str) -> str:
    return split(rel)[0]


def is_inside(rel: str, ancestor: str) -> bool:
    """True when ``rel`` is strictly below ``ancestor`` (lexical check)."""
    if not ancestor:
        return bool(rel)
    return rel.startswith(ancestor + "/")
