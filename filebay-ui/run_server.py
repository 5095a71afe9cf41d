#!/usr/bin/env python3
import os

from gevent import pywsgi

from app import create_app
from services.logging_setup import core_log as _core_log
from services.settings import _read_int_env


def main() -> None:
    app = create_app()
    host = os.environ.get("FILEBAY_HOST", "0.0.0.0")
    port = _read_int_env("FILEBAY_PORT", 8088)
    _core_log("info", "server.listen", host=host, port=port)
    server = pywsgi.WSGIServer((host, port), app)
    server.serve_forever()


if __name__ == "__main__":
    main()
