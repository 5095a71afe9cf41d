"""Trash API: /api/trash/*."""

from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify

from routes_common import bulk_response, json_body, record_activity, record_bulk
from services.activity_log import ActivityLog
from services.logging_setup import core_log as _core_log
from services.paths import RootContext
from services.payloads import DaysRequest, IdsRequest
from services.settings import Settings
from services.trash import TrashStore


def create_trash_blueprint(
    *,
    root: RootContext,
    trash: TrashStore,
    activity: ActivityLog | None,
    settings: Settings,
) -> Blueprint:
    bp = Blueprint("trash", __name__)

    @bp.get('/api/trash')
    def api_trash_list() -> Any:
        purged = trash.purge_expired(settings.trash_ttl_days)
        if purged is not None and purged.succeeded:
            _core_log("info", "trash.purge_expired", ttl_days=settings.trash_ttl_days, deleted=len(purged.succeeded))
        items = trash.list()
        return jsonify({
            'ok': True,
            'items': [e.to_dict() for e in items],
            'stats': {'items': len(items), 'bytes': sum(e.size for e in items)},
            'ttl_days': settings.trash_ttl_days,
        })

    @bp.post('/api/trash/restore')
    def api_trash_restore() -> Any:
        req = IdsRequest.parse(json_body())
        report = trash.restore(root, req.ids)
        record_bulk(activity, 'restore', report)
        _core_log("info", "trash.restore", restored=len(report.succeeded), errors=len(report.failed))
        return bulk_response(report, 'restored')

    @bp.post('/api/trash/delete')
    def api_trash_delete() -> Any:
        req = IdsRequest.parse(json_body())
        report = trash.delete_permanently(req.ids)
        record_bulk(activity, 'delete_permanent', report)
        _core_log("info", "trash.delete", deleted=len(report.succeeded), errors=len(report.failed))
        return bulk_response(report, 'deleted')

    @bp.post('/api/trash/empty')
    def api_trash_empty() -> Any:
        report = trash.empty_all()
        if report.succeeded:
            record_activity(activity, 'empty_trash', 'trash', 'multiple', '', count=len(report.succeeded))
        _core_log("info", "trash.empty", deleted=len(report.succeeded), errors=len(report.failed))
        return bulk_response(report, 'deleted')

    @bp.post('/api/trash/cleanup')
    def api_trash_cleanup() -> Any:
        """Permanently delete items trashed at least ``days`` ago.

        JSON body: {"days": 30}; 0 removes everything trashed so far.
        """
        req = DaysRequest.parse(json_body(), default=float(settings.trash_ttl_days or 30))
        report = trash.cleanup_older_than(req.days)
        if report.succeeded:
            record_activity(activity, 'cleanup_trash', 'trash', 'multiple', '', days=req.days, count=len(report.succeeded))
        _core_log("info", "trash.cleanup", days=req.days, deleted=len(report.succeeded), errors=len(report.failed))
        return bulk_response(report, 'deleted', days=req.days)

    return bp
