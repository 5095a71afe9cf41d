"""Typed errors for filesystem operations.

Every failure raised by the services carries a snake_case ``code`` (stable,
used by the UI), an HTTP ``status`` and a short human-readable message. The
``target`` is the path or trash id that failed so bulk responses can list
exactly which inputs failed and why.

Bulk operations do not raise per item: they collect ``ItemFailure`` values
into a ``BulkReport``.
"""

from __future__ import annotations

import errno
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class FsError(Exception):
    code = "io_failure"
    status = 500
    default_message = "filesystem operation failed"

    def __init__(self, message: Optional[str] = None, *, target: Optional[str] = None, **extra: Any) -> None:
        self.message = str(message or self.default_message)
        self.target = target
        self.extra: Dict[str, Any] = dict(extra)
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.target is not None:
            out["target"] = self.target
        out.update(self.extra)
        return out


class PathEscape(FsError):
    code = "path_escape"
    status = 403
    default_message = "path is outside the root directory"


class NotFound(FsError):
    code = "not_found"
    status = 404
    default_message = "not found"


class AlreadyExists(FsError):
    code = "already_exists"
    status = 409
    default_message = "already exists"


class NameInUse(FsError):
    code = "name_in_use"
    status = 409
    default_message = "name is already in use"


class InvalidName(FsError):
    code = "invalid_name"
    status = 400
    default_message = "invalid name"


class ParentMissing(FsError):
    code = "parent_missing"
    status = 409
    default_message = "parent directory does not exist"


class UnsupportedType(FsError):
    code = "unsupported_type"
    status = 415
    default_message = "file type is not supported"


class TooLarge(FsError):
    code = "too_large"
    status = 413
    default_message = "too large"


class NotWritable(FsError):
    code = "not_writable"
    status = 403
    default_message = "permission denied"


class NotReadable(FsError):
    code = "not_readable"
    status = 403
    default_message = "file is not readable"


class SelfMove(FsError):
    code = "self_move"
    status = 400
    default_message = "source and destination are the same"


class RecursiveMove(FsError):
    code = "recursive_move"
    status = 400
    default_message = "cannot move a folder into itself"


class CannotDisambiguate(FsError):
    code = "cannot_disambiguate"
    status = 409
    default_message = "no free name available"


class ChunkMissing(FsError):
    code = "chunk_missing"
    status = 409
    default_message = "upload chunk is missing"


class IOFailure(FsError):
    code = "io_failure"
    status = 500


class TrashUnavailable(FsError):
    code = "trash_unavailable"
    status = 500
    default_message = "trash folder is not usable"


class InvalidRequest(FsError):
    code = "invalid_request"
    status = 400
    default_message = "invalid request"


def io_error(exc: OSError, target: Optional[str] = None) -> FsError:
    """Map an OSError to the closest typed error, keeping the OS message."""
    msg = exc.strerror or str(exc) or exc.__class__.__name__
    num = getattr(exc, "errno", None)
    if num == errno.ENOENT:
        return NotFound(msg, target=target)
    if num in (errno.EEXIST, errno.ENOTEMPTY):
        return NameInUse(msg, target=target)
    if num in (errno.EACCES, errno.EPERM):
        return NotWritable(msg, target=target)
    return IOFailure(msg, target=target)


@dataclass
class ItemFailure:
    target: str
    code: str
    message: str

    @classmethod
    def from_error(cls, target: str, err: FsError) -> "ItemFailure":
        return cls(target=str(target), code=err.code, message=err.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"target": self.target, "error": self.code, "message": self.message}


@dataclass
class BulkReport:
    """Per-item outcome of a bulk operation."""

    succeeded: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[ItemFailure] = field(default_factory=list)

    def add(self, item: Dict[str, Any]) -> None:
        self.succeeded.append(item)

    def fail(self, target: str, err: FsError) -> None:
        self.failed.append(ItemFailure.from_error(target, err))

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def outcome(self) -> str:
        if not self.failed:
            return "ok"
        if self.succeeded:
            return "partial"
        return "failed"

    def http_status(self) -> int:
        outcome = self.outcome
        if outcome == "ok":
            return 200
        if outcome == "partial":
            return 207
        if len(self.failed) == 1:
            return _STATUS_BY_CODE.get(self.failed[0].code, 400)
        return 400

    def to_dict(self, key: str = "items") -> Dict[str, Any]:
        return {
            "ok": self.outcome != "failed",
            "outcome": self.outcome,
            key: list(self.succeeded),
            "errors": [f.to_dict() for f in self.failed],
        }


_STATUS_BY_CODE: Dict[str, int] = {
    cls.code: cls.status
    for cls in (
        PathEscape, NotFound, AlreadyExists, NameInUse, InvalidName, ParentMissing,
        UnsupportedType, TooLarge, NotWritable, NotReadable, SelfMove, RecursiveMove,
        CannotDisambiguate, ChunkMissing, IOFailure, TrashUnavailable, InvalidRequest,
    )
}
