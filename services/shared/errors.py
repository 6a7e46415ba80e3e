"""
Shared — エラー分類 (Error Taxonomy)

全サービス共通の例外階層。ハンドラは例外を受け取り、
{"error": <カテゴリ>, "message": <説明>} 形式の JSON に変換する。
スタックトレースや内部 ID はレスポンスに含めない。

  ValidationError        400
  Unauthenticated        401  (TokenExpired / InvalidSignature / AuthenticationFailed)
  PaymentDeclined        402
  Forbidden              403
  NotFound               404
  Conflict               409  (InsufficientStock)
  UpstreamFailure        500 / 502
  SimulatedFault         504  (デモ用の障害注入)
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    status_code = 500
    category = "InternalError"

    def __init__(self, message: str, *, status_code: int | None = None, **extra) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"error": self.category, "message": self.message, **self.extra}


class ValidationError(ServiceError):
    status_code = 400
    category = "ValidationError"


class NotFound(ServiceError):
    status_code = 404
    category = "NotFound"


class Conflict(ServiceError):
    status_code = 409
    category = "Conflict"


class InsufficientStock(Conflict):
    category = "InsufficientStock"


class Unauthenticated(ServiceError):
    status_code = 401
    category = "Unauthenticated"


class TokenExpired(Unauthenticated):
    category = "TokenExpired"


class InvalidSignature(Unauthenticated):
    category = "InvalidSignature"


class AuthenticationFailed(Unauthenticated):
    category = "AuthenticationFailed"


class Forbidden(ServiceError):
    status_code = 403
    category = "Forbidden"


class PaymentDeclined(ServiceError):
    status_code = 402
    category = "PaymentDeclined"


class UpstreamFailure(ServiceError):
    status_code = 502
    category = "UpstreamFailure"


class SimulatedFault(ServiceError):
    status_code = 504
    category = "SimulatedFault"


_HTTP_CATEGORIES = {
    404: ("NotFound", "Endpoint not found"),
    405: ("MethodNotAllowed", "Method not allowed"),
}


def install_error_handlers(app: FastAPI) -> None:
    """ServiceError・バリデーションエラー・未知の例外を JSON に変換する。"""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        fields = sorted(
            {
                ".".join(str(part) for part in err.get("loc", ()) if part != "body")
                for err in exc.errors()
            }
        )
        return JSONResponse(
            status_code=400,
            content={
                "error": ValidationError.category,
                "message": "Invalid request body",
                "fields": [f for f in fields if f],
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        category, message = _HTTP_CATEGORIES.get(
            exc.status_code, ("HTTPError", str(exc.detail))
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": category, "message": message},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Internal server error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "InternalError", "message": "Internal server error"},
        )
