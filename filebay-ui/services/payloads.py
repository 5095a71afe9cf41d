"""Typed request payloads.

Each endpoint parses its JSON body / form / query string into one of these
dataclasses; missing or malformed fields raise ``InvalidRequest`` naming the
field, before any filesystem work starts.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

from services.errors import InvalidRequest


def _str(data: Mapping[str, Any], key: str, *, required: bool = False, default: str = "") -> str:
    v = data.get(key)
    if v is None or (isinstance(v, str) and not v.strip()):
        if required:
            raise InvalidRequest(f"{key} is required", field=key)
        return default
    if not isinstance(v, (str, int, float)) or isinstance(v, bool):
        raise InvalidRequest(f"{key} must be a string", field=key)
    return str(v)


def _opt_str(data: Mapping[str, Any], key: str) -> Optional[str]:
    v = _str(data, key)
    return v or None


def _str_list(data: Mapping[str, Any], key: str, *, single: Optional[str] = None) -> List[str]:
    v = data.get(key)
    if v is None and single is not None and data.get(single) is not None:
        v = [data.get(single)]
    if not isinstance(v, list) or not v:
        raise InvalidRequest(f"{key} must be a non-empty list", field=key)
    out: List[str] = []
    for i, x in enumerate(v):
        if isinstance(x, bool) or not isinstance(x, (str, int)) or not str(x).strip():
            raise InvalidRequest(f"{key}[{i}] must be a non-empty string", field=key, index=i)
        out.append(str(x))
    return out


def _int(data: Mapping[str, Any], key: str, *, required: bool = False, default: int = 0) -> int:
    v = data.get(key)
    if v is None or v == "":
        if required:
            raise InvalidRequest(f"{key} is required", field=key)
        return default
    try:
        return int(str(v).strip())
    except ValueError:
        raise InvalidRequest(f"{key} must be an integer", field=key)


def _number(data: Mapping[str, Any], key: str, *, default: float) -> float:
    v = data.get(key)
    if v is None or v == "":
        return default
    if isinstance(v, bool):
        raise InvalidRequest(f"{key} must be a number", field=key)
    try:
        return float(v)
    except (TypeError, ValueError):
        raise InvalidRequest(f"{key} must be a number", field=key)


@dataclass
class PathRequest:
    path: str

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> "PathRequest":
        return cls(path=_str(data, "path"))


@dataclass
class WriteRequest:
    path: str
    content: str

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> "WriteRequest":
        content = data.get("content")
        if not isinstance(content, str):
            raise InvalidRequest("content must be a string", field="content")
        return cls(path=_str(data, "path", required=True), content=content)


@dataclass
class CreateRequest:
    parent: str
    name: str
    type: str
    content: str = ""

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> "CreateRequest":
        kind = _str(data, "type", default="file").lower()
        if kind not in ("file", "folder"):
            raise InvalidRequest("type must be 'file' or 'folder'", field="type")
        content = data.get("content", "")
        if not isinstance(content, str):
            raise InvalidRequest("content must be a string", field="content")
        return cls(parent=_str(data, "path"), name=_str(data, "name", required=True), type=kind, content=content)


@dataclass
class RenameRequest:
    path: str
    new_name: str

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> "RenameRequest":
        return cls(path=_str(data, "path", required=True), new_name=_str(data, "newName", required=True))


@dataclass
class MoveRequest:
    """Either ``sources`` + ``target`` folder (bulk) or ``path`` + ``new_path``."""

    sources: List[str]
    target: str
    path: str = ""
    new_path: str = ""

    @property
    def bulk(self) -> bool:
        return not self.path

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> "MoveRequest":
        if data.get("sources") is not None:
            return cls(sources=_str_list(data, "sources"), target=_str(data, "target"))
        return cls(
            sources=[],
            target="",
            path=_str(data, "path", required=True),
            new_path=_str(data, "newPath", required=True),
        )


@dataclass
class PathsRequest:
    paths: List[str]

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> "PathsRequest":
        return cls(paths=_str_list(data, "paths", single="path"))


@dataclass
class IdsRequest:
    ids: List[str]

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> "IdsRequest":
        return cls(ids=_str_list(data, "ids", single="id"))


@dataclass
class DaysRequest:
    days: float

    @classmethod
    def parse(cls, data: Mapping[str, Any], *, default: float) -> "DaysRequest":
        days = _number(data, "days", default=default)
        if days < 0:
            raise InvalidRequest("days must not be negative", field="days")
        return cls(days=days)


@dataclass
class CompressRequest:
    paths: List[str]
    target: Optional[str]
    name: Optional[str]

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> "CompressRequest":
        target = data.get("target")
        return cls(
            paths=_str_list(data, "paths", single="path"),
            target=None if target is None else _str(data, "target"),
            name=_opt_str(data, "name"),
        )


@dataclass
class ExtractRequest:
    path: str
    target: Optional[str]

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> "ExtractRequest":
        target = data.get("target")
        return cls(path=_str(data, "path", required=True), target=None if target is None else _str(data, "target"))


@dataclass
class ChunkUploadRequest:
    """Form fields sent with each uploaded chunk."""

    path: str
    original_name: str
    chunk_index: int
    total_chunks: int
    relative_path: Optional[str]

    @classmethod
    def is_chunked(cls, form: Mapping[str, Any]) -> bool:
        return form.get("totalChunks") not in (None, "")

    @classmethod
    def parse(cls, form: Mapping[str, Any], *, fallback_name: str = "") -> "ChunkUploadRequest":
        folder_upload = _str(form, "folderUpload").lower() in ("1", "true", "yes", "on")
        relative = _opt_str(form, "relativePath")
        return cls(
            path=_str(form, "path"),
            original_name=_str(form, "originalName") or fallback_name or _str(form, "originalName", required=True),
            chunk_index=_int(form, "chunkIndex", required=True),
            total_chunks=_int(form, "totalChunks", required=True),
            relative_path=(relative or "") if folder_upload else relative,
        )


@dataclass
class ActivityQuery:
    page: int
    limit: int
    action: Optional[str]
    target_type: Optional[str]
    search: Optional[str]

    @classmethod
    def parse(cls, args: Mapping[str, Any]) -> "ActivityQuery":
        return cls(
            page=_int(args, "page", default=1),
            limit=_int(args, "limit", default=50),
            action=_opt_str(args, "action"),
            target_type=_opt_str(args, "type"),
            search=_opt_str(args, "search"),
        )
