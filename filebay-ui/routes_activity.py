"""Activity log API: /api/activity/*."""

from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify, request

from routes_common import json_body
from services.activity_log import ActivityLog
from services.logging_setup import core_log as _core_log
from services.payloads import ActivityQuery, DaysRequest


def create_activity_blueprint(activity: ActivityLog) -> Blueprint:
    bp = Blueprint("activity", __name__)

    @bp.get('/api/activity')
    def api_activity_list() -> Any:
        q = ActivityQuery.parse(request.args)
        data = activity.read(q.page, q.limit, q.action, q.target_type, q.search)
        return jsonify({'ok': True, **data})

    @bp.post('/api/activity/cleanup')
    def api_activity_cleanup() -> Any:
        req = DaysRequest.parse(json_body(), default=30.0)
        removed = activity.cleanup(req.days)
        _core_log("info", "activity.cleanup", days=req.days, removed=removed)
        return jsonify({'ok': True, 'removed': removed, 'days': req.days})

    return bp
