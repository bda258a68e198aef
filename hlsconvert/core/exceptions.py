"""Error taxonomy for the conversion service and its HTTP mapping."""

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from hlsconvert.core.logging import get_logger

logger = get_logger(__name__)


class ConverterError(Exception):
    """Base exception for the conversion service."""

    def __init__(
        self,
        message: str,
        code: str = "CONVERTER_ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class InvalidRequest(ConverterError):
    """Caller supplied a missing or malformed source URL."""

    def __init__(self, message: str, field: Optional[str] = "url"):
        super().__init__(
            message=message,
            code="INVALID_REQUEST",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"field": field} if field else {},
        )


class NotFound(ConverterError):
    """Status query for an unknown job id."""

    def __init__(self, job_id: str):
        super().__init__(
            message=f"Job not found: {job_id}",
            code="NOT_FOUND",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"job_id": job_id},
        )


class ToolUnavailable(ConverterError):
    """The conversion binary is missing or cannot be executed."""

    MESSAGE = "tool unavailable"

    def __init__(self, path: Optional[str] = None):
        super().__init__(
            message=self.MESSAGE,
            code="TOOL_UNAVAILABLE",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"path": path} if path else {},
        )


class ServiceStopping(ConverterError):
    """A conversion was submitted while the scheduler is shutting down."""

    def __init__(self):
        super().__init__(
            message="Service is shutting down",
            code="SERVICE_STOPPING",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


class ConfigurationError(ConverterError):
    """A setting has a value the service cannot run with."""

    def __init__(self, message: str, setting: Optional[str] = None):
        super().__init__(
            message=message,
            code="CONFIGURATION_ERROR",
            details={"setting": setting} if setting else {},
        )


class ConversionFailed(ConverterError):
    """The conversion process exited unsuccessfully."""

    def __init__(self, message: str, code: str = "CONVERSION_FAILED"):
        super().__init__(message=message, code=code)


class ConversionTimeout(ConversionFailed):
    """The conversion process exceeded its time limit and was killed."""

    MESSAGE = "timeout"

    def __init__(self):
        super().__init__(self.MESSAGE, code="CONVERSION_TIMEOUT")


class ArtifactError(ConverterError):
    """Publishing an output artifact failed."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(
            message=message,
            code="ARTIFACT_ERROR",
            details={"path": path} if path else {},
        )


def install_exception_handlers(app: FastAPI) -> None:
    """Install exception handlers on the FastAPI app."""

    @app.exception_handler(ConverterError)
    async def converter_exception_handler(request: Request, exc: ConverterError):
        if exc.status_code >= 500:
            logger.error("Request failed", code=exc.code, message=exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.code,
                "message": exc.message,
                "details": exc.details,
            },
        )
