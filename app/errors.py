import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.config import settings

logger = logging.getLogger("health-sync.errors")

_REASONS = {
    status.HTTP_400_BAD_REQUEST: "Bad Request",
    status.HTTP_401_UNAUTHORIZED: "Unauthorized",
    status.HTTP_403_FORBIDDEN: "Forbidden",
    status.HTTP_404_NOT_FOUND: "Not Found",
    status.HTTP_405_METHOD_NOT_ALLOWED: "Method Not Allowed",
    status.HTTP_503_SERVICE_UNAVAILABLE: "Service Unavailable",
}


class ApplicationException(Exception):
    def __init__(self, message: str, status_code: int = status.HTTP_400_BAD_REQUEST):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def to_response(self):
        return JSONResponse(
            status_code=self.status_code,
            content={
                "error": _REASONS.get(self.status_code, "Error"),
                "message": self.message,
            },
        )


class MalformedBatchError(ApplicationException):
    """The batch envelope is not a list of records; nothing was written."""


class StoreUnavailableError(ApplicationException):
    """The durable store cannot be reached; the whole batch must be retried."""

    def __init__(self, message: str = "Database unavailable, retry the batch later"):
        super().__init__(message, status.HTTP_503_SERVICE_UNAVAILABLE)


async def application_exception_handler(request: Request, exc: ApplicationException):
    logger.warning("Application error on %s %s: %s", request.method, request.url.path, exc.message)
    return exc.to_response()


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail
    if exc.status_code == status.HTTP_404_NOT_FOUND and message == "Not Found":
        message = "The requested endpoint does not exist"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": _REASONS.get(exc.status_code, "Error"), "message": message},
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    if location:
        message = f"{location}: {message}"
    logger.info("Rejected malformed request on %s: %s", request.url.path, message)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Bad Request", "message": message},
    )


async def generic_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s: %r", request.method, request.url.path, exc, exc_info=exc)
    content = {"error": "Internal Server Error", "message": "Something went wrong"}
    if settings.is_development:
        content["details"] = str(exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)


def register_exception_handlers(app) -> None:
    app.add_exception_handler(ApplicationException, application_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
