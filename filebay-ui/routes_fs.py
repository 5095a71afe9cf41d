"""File browser API: /api/fs/*.

Every handler parses its payload into a typed request, calls into the
services with the configured root and lets ``FsError`` propagate to the
app-level error handler, which renders it as JSON.
"""

from __future__ import annotations

import os
from typing import Any

from flask import Blueprint, jsonify, request, send_file

from routes_common import bulk_response, client_addr, json_body, record_activity, record_bulk
from services.activity_log import ActivityLog
from services.errors import UnsupportedType
from services.filestore import (
    create_file,
    create_folder,
    move,
    move_many,
    read_text,
    rename,
    write_text,
)
from services.listing import list_directory
from services.logging_setup import core_log as _core_log
from services.paths import RootContext, join, resolve, sanitize, validate_name
from services.payloads import (
    CreateRequest,
    MoveRequest,
    PathRequest,
    PathsRequest,
    RenameRequest,
    WriteRequest,
)
from services.settings import Settings
from services.trash import TrashStore


def create_fs_blueprint(
    *,
    root: RootContext,
    trash: TrashStore,
    activity: ActivityLog | None,
    settings: Settings,
) -> Blueprint:
    """Create /api/fs/* blueprint.

    Args:
        root: the managed root directory.
        trash: quarantine used by /api/fs/delete.
        activity: activity log written after successful mutations.
        settings: limits (editable extensions, max edit size).
    """

    bp = Blueprint("fs", __name__)

    @bp.get('/api/fs/list')
    def api_fs_list() -> Any:
        req = PathRequest.parse(request.args)
        listing = list_directory(root, req.path)
        return jsonify({'ok': True, **listing.to_dict()})

    @bp.get('/api/fs/read')
    def api_fs_read() -> Any:
        req = PathRequest.parse(request.args)
        doc = read_text(root, req.path, settings.editable_extensions, settings.max_edit_bytes)
        return jsonify({'ok': True, **doc.to_dict()})

    @bp.post('/api/fs/write')
    def api_fs_write() -> Any:
        """Replace the content of an existing text file.

        JSON body: {"path": "...", "content": "..."}
        """
        req = WriteRequest.parse(json_body())
        entry = write_text(root, req.path, req.content, settings.editable_extensions, settings.max_edit_bytes)
        record_activity(activity, 'edit', entry.name, entry.type, entry.path, size=entry.size)
        _core_log("info", "fs.write", path=entry.path, bytes=entry.size)
        return jsonify({'ok': True, 'item': entry.to_dict()})

    @bp.post('/api/fs/create')
    def api_fs_create() -> Any:
        """Create an empty folder or a file.

        JSON body: {"path": "<parent>", "name": "...", "type": "file"|"folder", "content"?: "..."}
        """
        req = CreateRequest.parse(json_body())
        rel = join(sanitize(req.parent), validate_name(req.name))
        if req.type == 'folder':
            entry = create_folder(root, rel)
        else:
            entry = create_file(root, rel, req.content)
        record_activity(activity, 'create', entry.name, entry.type, entry.path)
        _core_log("info", "fs.create", path=entry.path, type=entry.type)
        return jsonify({'ok': True, 'item': entry.to_dict()})

    @bp.post('/api/fs/rename')
    def api_fs_rename() -> Any:
        req = RenameRequest.parse(json_body())
        entry = rename(root, req.path, req.new_name)
        record_activity(activity, 'rename', entry.name, entry.type, entry.path, **{'from': sanitize(req.path)})
        _core_log("info", "fs.rename", src=sanitize(req.path), dst=entry.path)
        return jsonify({'ok': True, 'item': entry.to_dict()})

    @bp.post('/api/fs/move')
    def api_fs_move() -> Any:
        """Move entries.

        JSON body, bulk: {"sources": ["...", ...], "target": "<folder>"}
        JSON body, single: {"path": "...", "newPath": "<full destination path>"}
        """
        req = MoveRequest.parse(json_body())
        if not req.bulk:
            entry = move(root, req.path, req.new_path)
            record_activity(activity, 'move', entry.name, entry.type, entry.path, **{'from': sanitize(req.path)})
            _core_log("info", "fs.move", src=sanitize(req.path), dst=entry.path)
            return jsonify({'ok': True, 'item': entry.to_dict()})

        report = move_many(root, req.sources, req.target)
        record_bulk(activity, 'move', report, target=sanitize(req.target))
        _core_log("info", "fs.move", target=sanitize(req.target), moved=len(report.succeeded), errors=len(report.failed))
        return bulk_response(report, 'moved')

    @bp.post('/api/fs/delete')
    def api_fs_delete() -> Any:
        """Soft delete: move entries into the trash.

        JSON body: {"paths": ["...", ...]}
        """
        req = PathsRequest.parse(json_body())
        report = trash.trash(root, req.paths, deleted_by=client_addr())
        record_bulk(activity, 'trash', report)
        _core_log("info", "fs.trash", trashed=len(report.succeeded), errors=len(report.failed))
        return bulk_response(report, 'trashed')

    @bp.get('/api/fs/download')
    def api_fs_download() -> Any:
        req = PathRequest.parse(request.args)
        rel = sanitize(req.path)
        ap = resolve(root, rel)
        if not os.path.isfile(ap):
            raise UnsupportedType("only files can be downloaded", target=rel)
        return send_file(ap, as_attachment=True, download_name=os.path.basename(ap))

    return bp
