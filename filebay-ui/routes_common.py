"""Helpers shared by the /api/* blueprints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from flask import jsonify, request

from services.activity_log import ActivityLog
from services.errors import BulkReport, FsError, InvalidRequest
from services.logging_setup import core_log as _core_log


def error_response(error: str, status: int = 400, *, ok: bool | None = None, **extra: Any) -> Any:
    """JSON error body ``{"error": <code>, ...extra}`` with ``status``."""
    payload: Dict[str, Any] = {"error": error}
    if ok is not None:
        payload["ok"] = ok
    payload.update(extra)
    return jsonify(payload), status


def fs_error_response(err: FsError) -> Any:
    extra = err.to_dict()
    extra.pop("error", None)
    return error_response(err.code, err.status, ok=False, **extra)


def bulk_response(report: BulkReport, key: str, **extra: Any) -> Any:
    """JSON for a bulk operation: 200 all ok, 207 partial, 4xx nothing succeeded."""
    payload = report.to_dict(key)
    payload.update(extra)
    return jsonify(payload), report.http_status()


def json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidRequest("JSON object expected")
    return data


def client_addr() -> str:
    fwd = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    return fwd or request.remote_addr or "unknown"


def record_activity(
    activity: Optional[ActivityLog],
    action: str,
    target_name: str,
    target_type: str,
    path: str = "",
    **extra: Any,
) -> None:
    """Append an activity record for a mutation that already succeeded.

    A failing activity log is reported in core.log but does not turn the
    completed operation into an error.
    """
    if activity is None:
        return
    extra.setdefault("ip", client_addr())
    extra.setdefault("userAgent", request.headers.get("User-Agent", ""))
    try:
        activity.record(action, target_name, target_type, path, extra)
    except (FsError, OSError) as e:
        _core_log("warning", "activity.record_failed", action=action, path=path, error=e)


def record_bulk(
    activity: Optional[ActivityLog],
    action: str,
    report: BulkReport,
    **extra: Any,
) -> None:
    """One record per single-item success, one ``bulk_<action>`` record otherwise."""
    items = report.succeeded
    if not items:
        return
    if len(items) == 1:
        it = items[0]
        record_activity(activity, action, str(it.get("name") or ""), str(it.get("type") or ""), str(it.get("path") or ""), **extra)
        return
    record_activity(
        activity,
        f"bulk_{action}",
        f"{len(items)} items",
        "multiple",
        "",
        count=len(items),
        failed=len(report.failed),
        items=[str(it.get("path") or it.get("id") or "") for it in items],
        **extra,
    )
