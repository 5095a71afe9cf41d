"""filebay: Flask application factory.

``create_app`` wires settings, the root directory, the trash, the upload
assembler and the activity log into the /api/* blueprints.
"""

from __future__ import annotations

import time
import traceback
from dataclasses import dataclass
from typing import Any, Optional

from flask import Flask, g, request
from werkzeug.exceptions import HTTPException

from routes_activity import create_activity_blueprint
from routes_archive import create_archive_blueprint
from routes_common import client_addr, error_response, fs_error_response
from routes_fs import create_fs_blueprint
from routes_trash import create_trash_blueprint
from routes_upload import create_upload_blueprint
from services.activity_log import ActivityLog
from services.chunks import ChunkAssembler
from services.errors import FsError
from services.logging_setup import access_enabled, access_logger, core_log as _core_log, setup_logging
from services.paths import RootContext
from services.settings import Settings
from services.trash import TrashStore


@dataclass
class AppServices:
    settings: Settings
    root: RootContext
    trash: TrashStore
    chunks: ChunkAssembler
    activity: ActivityLog


def create_app(settings: Optional[Settings] = None) -> Flask:
    settings = settings or Settings.from_env()
    settings.ensure_dirs()
    setup_logging(settings.log_dir)

    root = RootContext.from_path(settings.root, reserved=settings.internal_paths())
    trash = TrashStore(settings.trash_dir)
    trash.check_filesystem(root)
    services = AppServices(
        settings=settings,
        root=root,
        trash=trash,
        chunks=ChunkAssembler(root, settings.staging_dir, max_chunk_bytes=settings.max_upload_bytes),
        activity=ActivityLog(settings.activity_log, settings.activity_max_entries),
    )

    app = Flask(__name__)
    app.extensions["filebay"] = services

    app.register_blueprint(create_fs_blueprint(
        root=root, trash=services.trash, activity=services.activity, settings=settings,
    ))
    app.register_blueprint(create_upload_blueprint(
        root=root, chunks=services.chunks, activity=services.activity, settings=settings,
    ))
    app.register_blueprint(create_trash_blueprint(
        root=root, trash=services.trash, activity=services.activity, settings=settings,
    ))
    app.register_blueprint(create_archive_blueprint(
        root=root, activity=services.activity, settings=settings,
    ))
    app.register_blueprint(create_activity_blueprint(services.activity))

    _register_error_handlers(app)
    _register_access_log(app)

    _core_log("info", "app.start", root=root.path, data_dir=settings.data_dir)
    return app


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(FsError)
    def _fs_error(err: FsError) -> Any:
        if err.code == "path_escape":
            _core_log("warning", "security.path_escape", target=err.target, url=request.path, client=client_addr())
        elif err.status >= 500:
            _core_log("error", "fs.error", code=err.code, target=err.target, message=err.message, url=request.path)
        return fs_error_response(err)

    @app.errorhandler(HTTPException)
    def _http_error(err: HTTPException) -> Any:
        code = (err.name or "error").lower().replace(" ", "_")
        return error_response(code, err.code or 500, ok=False, message=err.description or "")

    @app.errorhandler(Exception)
    def _unhandled(err: Exception) -> Any:
        _core_log("error", "unhandled", url=request.path, error=repr(err), trace=traceback.format_exc())
        return error_response("internal_error", 500, ok=False, message="internal server error")


def _register_access_log(app: Flask) -> None:
    @app.before_request
    def _access_log_before_request():
        g._filebay_t0 = time.time()
        return None

    @app.after_request
    def _access_log_after_request(response):
        try:
            if not access_enabled():
                return response
            dt_ms = None
            t0 = getattr(g, "_filebay_t0", None)
            if t0:
                dt_ms = int((time.time() - float(t0)) * 1000.0)
            line = f"{client_addr()} {request.method} {request.path} -> {response.status_code}"
            if dt_ms is not None:
                line += f" ({dt_ms}ms)"
            access_logger().info(line)
        except Exception:
            # Logging must never affect response
            pass
        return response
