"""
Shared — ロギング設定

標準ライブラリの logging を使う。各ログにサービス名を付与し、
リクエストごとに X-Request-ID を採番してアクセスログに残す。
"""

import logging
import time
import uuid

from fastapi import FastAPI, Request

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(service)s %(name)s: %(message)s"

access_logger = logging.getLogger("services.access")


class _ServiceNameFilter(logging.Filter):
    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service_name
        return True


class _ServiceHandler(logging.StreamHandler):
    """configure_logging が追加したハンドラの目印。"""


def configure_logging(service_name: str, level: str = "INFO") -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, _ServiceHandler):
            root.removeHandler(handler)

    handler = _ServiceHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(_ServiceNameFilter(service_name))
    root.addHandler(handler)
    root.setLevel(level.upper())

    # ライブラリのノイズを抑える
    logging.getLogger("httpx").setLevel(logging.WARNING)


def install_request_logging(app: FastAPI) -> None:
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        access_logger.info(
            "%s %s -> %s (%.1fms) request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request_id,
        )
        return response
