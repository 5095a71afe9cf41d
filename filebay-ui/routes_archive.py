"""Archive API: /api/archive/*."""

from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify, request

from routes_common import json_body, record_activity
from services.activity_log import ActivityLog
from services.archive import create_zip, extract_zip, list_zip
from services.logging_setup import core_log as _core_log
from services.paths import RootContext, sanitize
from services.payloads import CompressRequest, ExtractRequest, PathRequest
from services.settings import Settings


def create_archive_blueprint(
    *,
    root: RootContext,
    activity: ActivityLog | None,
    settings: Settings,
) -> Blueprint:
    bp = Blueprint("archive", __name__)

    @bp.post('/api/archive/compress')
    def api_archive_compress() -> Any:
        """JSON body: {"paths": [...], "target"?: "<folder>", "name"?: "<zip name>"}"""
        req = CompressRequest.parse(json_body())
        entry, report = create_zip(root, req.paths, req.target, req.name)
        record_activity(activity, 'compress', entry.name, entry.type, entry.path, items=[i['path'] for i in report.succeeded])
        _core_log("info", "archive.compress", path=entry.path, items=len(report.succeeded), skipped=len(report.failed))
        return jsonify({
            'ok': True,
            'item': entry.to_dict(),
            'included': report.succeeded,
            'errors': [f.to_dict() for f in report.failed],
        })

    @bp.post('/api/archive/extract')
    def api_archive_extract() -> Any:
        """JSON body: {"path": "<zip>", "target"?: "<folder>"}"""
        req = ExtractRequest.parse(json_body())
        result = extract_zip(root, req.path, req.target, max_bytes=settings.max_extract_bytes)
        folder = result['folder']
        record_activity(activity, 'extract', folder['name'], folder['type'], folder['path'],
                        archive=sanitize(req.path), files=result['extracted'])
        _core_log("info", "archive.extract", archive=sanitize(req.path), dest=folder['path'],
                  files=result['extracted'], skipped=len(result['skipped']))
        return jsonify({'ok': True, **result})

    @bp.get('/api/archive/contents')
    def api_archive_contents() -> Any:
        req = PathRequest.parse(request.args)
        return jsonify({'ok': True, 'entries': list_zip(root, req.path)})

    return bp
