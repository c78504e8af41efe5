import logging

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class OtaError(Exception):
    """Base for every failure a service can surface to a client."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidVersionFormat(OtaError):
    status_code = 400
    code = "invalid_version_format"


class InvalidRangeFormat(OtaError):
    status_code = 400
    code = "invalid_range_format"


class MissingRequiredField(OtaError):
    status_code = 400
    code = "missing_required_field"


class InvalidParameter(OtaError):
    status_code = 400
    code = "invalid_parameter"


class InvalidPackage(OtaError):
    status_code = 400
    code = "invalid_package"


class NotFound(OtaError):
    status_code = 404
    code = "not_found"


class DuplicateUpdate(OtaError):
    status_code = 409
    code = "duplicate_update"

    def __init__(self, version: str, channel: str):
        super().__init__(
            f"Version {version} already exists on the {channel} channel. "
            "Increment the version or publish to a different channel.",
            details={"version": version, "channel": channel},
        )
        self.version = version
        self.channel = channel


class SlugTaken(OtaError):
    status_code = 409
    code = "slug_taken"


class StorageWriteFailed(OtaError):
    status_code = 500
    code = "storage_write_failed"


class TransactionAborted(OtaError):
    status_code = 500
    code = "transaction_aborted"


def _error_payload(code: str, message: str, details):
    return {"code": code, "message": message, "details": details}


def register_error_handlers(app) -> None:
    @app.exception_handler(OtaError)
    async def ota_error_handler(request: Request, exc: OtaError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.code, exc.message, exc.details),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        detail = exc.detail
        code = f"http_{exc.status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(code, message, details),
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=_error_payload("validation_error", "Validation error", jsonable_encoder(exc.errors())),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=_error_payload("internal_error", "Internal server error", None),
        )
