"""Error shape shared by every endpoint: ``{"error": message, "detail"?: ...}``."""

import logging
from contextlib import contextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ApiError(Exception):
    def __init__(self, message: str, status_code: int = 400, **extra):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.extra = extra

    def to_dict(self) -> dict:
        body = {"error": self.message}
        body.update({k: v for k, v in self.extra.items() if v is not None})
        return body


def first_message(exc: ValidationError) -> str:
    """The message a field validator raised, without pydantic's prefix."""
    for err in exc.errors():
        ctx = err.get("ctx") or {}
        if "error" in ctx:
            return str(ctx["error"])
        return err.get("msg", "Invalid request")
    return "Invalid request"


def validation_detail(exc) -> list:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]


@contextmanager
def failure(message: str):
    """Turn database errors raised inside the block into a 500 ApiError."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.exception(message)
        raise ApiError(message, 500, detail=str(e)) from e


def error_response(exc: ApiError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def install_handlers(app: FastAPI):
    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        if exc.status_code >= 500:
            logger.error("%s %s -> %s", request.method, request.url.path, exc.message)
        return error_response(exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        # Unmatched paths and methods share the router's 404 shape
        if exc.status_code in (404, 405):
            return error_response(
                ApiError("Not found", 404, path=request.url.path, method=request.method)
            )
        return error_response(ApiError(str(exc.detail), exc.status_code))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return error_response(ApiError("Invalid request", 400, detail=validation_detail(exc)))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error for %s %s", request.method, request.url.path)
        return error_response(ApiError("Internal server error", 500))
