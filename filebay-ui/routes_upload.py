"""Upload API: /api/fs/upload (plain multipart and chunked)."""

from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify, request

from routes_common import bulk_response, record_activity, record_bulk
from services.activity_log import ActivityLog
from services.chunks import ChunkAssembler
from services.errors import BulkReport, FsError, InvalidRequest
from services.filestore import save_stream
from services.logging_setup import core_log as _core_log
from services.paths import RootContext
from services.payloads import ChunkUploadRequest
from services.settings import Settings


def create_upload_blueprint(
    *,
    root: RootContext,
    chunks: ChunkAssembler,
    activity: ActivityLog | None,
    settings: Settings,
) -> Blueprint:
    bp = Blueprint("upload", __name__)

    @bp.post('/api/fs/upload')
    def api_fs_upload() -> Any:
        """Upload files into a folder.

        multipart: file=<file> (repeatable), path=<target folder>

        Chunked uploads add originalName, chunkIndex, totalChunks and, for
        folder uploads, folderUpload=true plus relativePath. The response
        reports finished=false until the last missing chunk arrives.
        """
        chunks.maybe_purge(settings.staging_max_age_hours * 3600)

        files = [f for f in request.files.getlist('file') if f]
        if not files:
            raise InvalidRequest("file is required", field="file")
        form = request.form

        if ChunkUploadRequest.is_chunked(form):
            f = files[0]
            req = ChunkUploadRequest.parse(form, fallback_name=f.filename or "")
            result = chunks.receive(
                req.path, req.original_name, req.chunk_index, req.total_chunks, f.stream, req.relative_path,
            )
            if result.finished and result.entry is not None:
                entry = result.entry
                record_activity(activity, 'upload', entry.name, entry.type, entry.path, size=entry.size, chunks=result.total)
                _core_log("info", "fs.upload", path=entry.path, bytes=entry.size, chunks=result.total)
            return jsonify({'ok': True, **result.to_dict()})

        dir_rel = form.get('path') or request.args.get('path') or ''
        report = BulkReport()
        for f in files:
            try:
                entry = save_stream(root, dir_rel, f.filename, f.stream, max_bytes=settings.max_upload_bytes)
            except FsError as e:
                report.fail(f.filename or '', e)
                continue
            report.add(entry.to_dict())
        record_bulk(activity, 'upload', report)
        _core_log("info", "fs.upload", path=dir_rel, uploaded=len(report.succeeded), errors=len(report.failed))
        return bulk_response(report, 'uploaded')

    return bp
