"""Directory listings for the file browser."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from services.errors import FsError, InvalidRequest, io_error
from services.filestore import TEMP_PREFIX, FileSystemEntry, entry_for
from services.paths import RootContext, join, parent_of, resolve, sanitize


_DIGITS = re.compile(r"(\d+)")


def natural_key(name: str) -> Tuple[Any, ...]:
    """Case-insensitive natural sort key: ``file2`` sorts before ``file10``."""
    parts = _DIGITS.split(name.casefold())
    return tuple((0, int(p), p) if p.isdigit() else (1, p, p) for p in parts if p != "")


def breadcrumbs(rel: str) -> List[Dict[str, str]]:
    crumbs = [{"label": "Root", "path": ""}]
    acc = ""
    for seg in rel.split("/") if rel else []:
        acc = join(acc, seg)
        crumbs.append({"label": seg, "path": acc})
    return crumbs


@dataclass
class DirectoryListing:
    path: str
    parent: Optional[str]
    breadcrumbs: List[Dict[str, str]]
    items: List[FileSystemEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "parent": self.parent,
            "breadcrumbs": self.breadcrumbs,
            "items": [i.to_dict() for i in self.items],
        }


def list_directory(root: RootContext, rel: Any) -> DirectoryListing:
    """List a folder: folders first, then natural order by name.

    Reserved internal folders living under the root are left out.
    """
    rel = sanitize(rel)
    ap = resolve(root, rel)
    if not os.path.isdir(ap):
        raise InvalidRequest("not a folder", target=rel)
    items: List[FileSystemEntry] = []
    try:
        with os.scandir(ap) as it:
            for de in it:
                if de.name.startswith(TEMP_PREFIX):
                    continue
                if root.is_reserved(de.path):
                    continue
                try:
                    items.append(entry_for(root, de.path))
                except FsError:
                    # vanished while listing
                    continue
    except OSError as e:
        raise io_error(e, rel)
    # entries are built relative to the resolved folder; report them under the requested path
    for item in items:
        item.path = join(rel, item.name)
    items.sort(key=lambda e: (0 if e.type == "folder" else 1, natural_key(e.name)))
    return DirectoryListing(
        path=rel,
        parent=parent_of(rel) if rel else None,
        breadcrumbs=breadcrumbs(rel),
        items=items,
    )
