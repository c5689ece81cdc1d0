"""
Error taxonomy for Hearth.

Four kinds of failure cross module boundaries:

- NotFoundError: room, appliance or canonical device missing. Surfaced to the
  caller, never retried automatically.
- TransientIOError: network or storage failure. During a device mutation a
  canonical-side failure does not abort the aggregate write; the written
  fields stay pending until the canonical value catches up.
- PreconditionError: valid but not allowed in the current state (away mode
  while the door is unlocked). Its message is safe to speak to the user.
- SpeechTimeoutError: recognition ran out of time. Resolved to an empty
  transcript inside the speech client.

BadRequestError covers state changes the appliance type cannot carry.
ServiceRejectedError covers other refusals from a backing service (401, 403,
422, malformed bodies); retrying will not help.

Usage:
    from shared.errors import register_exception_handlers, NotFoundError

    app = FastAPI()
    register_exception_handlers(app)

    if room is None:
        raise NotFoundError("Room not found", detail=room_id)
"""
from typing import Optional
from pydantic import BaseModel
from fastapi import Request
from fastapi.responses import JSONResponse
from enum import Enum
from datetime import datetime, timezone
import structlog

logger = structlog.get_logger(__name__)


class ErrorCode(str, Enum):
    BAD_REQUEST = "BAD_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    TRANSIENT_IO = "TRANSIENT_IO"
    TIMEOUT = "TIMEOUT"
    UPSTREAM_REJECTED = "UPSTREAM_REJECTED"
    NOT_CONFIGURED = "NOT_CONFIGURED"


class ErrorResponse(BaseModel):
    """
    JSON body of every error answered by the gateway.

    {
        "error": true,
        "code": "PRECONDITION_FAILED",
        "message": "Please lock the door before activating away mode.",
        "detail": "home_unlocked",
        "timestamp": "2026-01-12T07:45:00Z"
    }
    """
    error: bool = True
    code: str
    message: str
    detail: Optional[str] = None
    timestamp: Optional[str] = None


class HomeException(Exception):
    """Base class for every domain error; carries an HTTP status for the gateway."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = 500,
        detail: Optional[str] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            code=self.code.value,
            message=self.message,
            detail=self.detail,
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        )


class BadRequestError(HomeException):
    """400 - state fields the appliance does not carry, or values out of range."""
    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(ErrorCode.BAD_REQUEST, message, 400, detail)


class NotFoundError(HomeException):
    """404 - room, appliance or canonical device doesn't exist."""
    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(ErrorCode.NOT_FOUND, message, 404, detail)


class PreconditionError(HomeException):
    """409 - not allowed in the current security phase."""
    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(ErrorCode.PRECONDITION_FAILED, message, 409, detail)


class TransientIOError(HomeException):
    """503 - a backing service or the network is unavailable."""
    def __init__(self, service: str, detail: Optional[str] = None):
        super().__init__(
            ErrorCode.TRANSIENT_IO,
            f"Service '{service}' is unavailable",
            503,
            detail
        )
        self.service = service


class ServiceRejectedError(HomeException):
    """502 - a backing service refused the request (auth, validation) or answered garbage."""
    def __init__(self, service: str, detail: Optional[str] = None):
        super().__init__(
            ErrorCode.UPSTREAM_REJECTED,
            f"Service '{service}' rejected the request",
            502,
            detail
        )
        self.service = service


class SpeechTimeoutError(HomeException):
    """504 - no transcript within the listen timeout."""
    def __init__(self, message: str = "Speech recognition timed out", detail: Optional[str] = None):
        super().__init__(ErrorCode.TIMEOUT, message, 504, detail)


async def home_exception_handler(request: Request, exc: HomeException) -> JSONResponse:
    """Log a domain error and answer with an ErrorResponse body."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "home_exception",
        code=exc.code.value,
        message=exc.message,
        status_code=exc.status_code,
        detail=exc.detail,
        path=str(request.url.path)
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_response().model_dump())


def register_exception_handlers(app) -> None:
    """
    Register the HomeException handler with a FastAPI application.

    Unhandled exceptions are left to FastAPI so request validation errors
    keep their 422 answers.
    """
    app.add_exception_handler(HomeException, home_exception_handler)
    logger.info("home_exception_handlers_registered")
