"""Error taxonomy and the FastAPI handlers that render it as ``{"message": ...}``."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError

logger = logging.getLogger(__name__)


class DevlinkError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.message
        super().__init__(self.message)

    def body(self) -> Dict[str, Any]:
        return {"message": self.message}


class Unauthenticated(DevlinkError):
    status_code = 401
    message = "Invalid token"


class Forbidden(DevlinkError):
    status_code = 403
    message = "Forbidden"


class NotFound(DevlinkError):
    status_code = 404
    message = "Not found"


class Conflict(DevlinkError):
    status_code = 409
    message = "Duplicate record"


class InvalidTransition(DevlinkError):
    status_code = 409
    message = "Invalid status transition"


class ValidationFailed(DevlinkError):
    status_code = 400
    message = "Validation failed"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(message)
        self.errors = errors or []

    def body(self) -> Dict[str, Any]:
        return {"message": self.message, "errors": self.errors}


class InvalidOrExpiredCode(DevlinkError):
    status_code = 400
    message = "Invalid or expired verification code"


class FeatureNotImplemented(DevlinkError):
    status_code = 501
    message = "Not implemented"


class ServiceUnavailable(DevlinkError):
    status_code = 503
    message = "Service unavailable"


class UploadFailed(DevlinkError):
    message = "File upload failed. Please try again."


class UpstreamFailed(DevlinkError):
    status_code = 502
    message = "Failed to fetch from upstream"


class DeliveryFailed(DevlinkError):
    message = "We couldn't send the verification code. Please try again in a moment."


def _field_errors(exc: RequestValidationError) -> List[Dict[str, str]]:
    errors = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        errors.append({"field": ".".join(loc) or "field", "message": err.get("msg", "Invalid value")})
    return errors


async def devlink_error_handler(request: Request, exc: DevlinkError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.body())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = _field_errors(exc)
    first = errors[0] if errors else None
    if first and first["field"] != "field":
        message = f"{first['field'][:1].upper()}{first['field'][1:]}: {first['message']}"
    elif first:
        message = first["message"]
    else:
        message = ValidationFailed.message
    return JSONResponse(status_code=400, content={"message": message, "errors": errors})


async def duplicate_key_handler(request: Request, exc: DuplicateKeyError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"message": Conflict.message})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DevlinkError, devlink_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(DuplicateKeyError, duplicate_key_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
