"""Custom exceptions for the render engine.

Every error carries a machine-readable code (see ``constants.error_codes``)
so the HTTP surface and batch results can report it without string parsing.
"""

from typing import TYPE_CHECKING, Any

from adreel.constants.error_codes import get_error_spec, is_retryable
from adreel.schemas.envelope import ErrorInfo, ErrorLocation

if TYPE_CHECKING:
    from adreel.render.batch import BatchResult


class AdreelError(Exception):
    """Base exception for all engine errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        location: ErrorLocation | None = None,
        suggested_fix: str | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.location = location
        self.suggested_fix = suggested_fix
        super().__init__(self.message)

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo for API responses and batch reports."""
        return ErrorInfo(
            code=self.code,
            message=self.message,
            stage=getattr(self, "stage", None),
            location=self.location,
            retryable=is_retryable(self.code),
            suggested_fix=self.suggested_fix or get_error_spec(self.code).get("suggested_fix"),
        )


# =============================================================================
# Validation Errors (400)
# =============================================================================


class ValidationError(AdreelError):
    """Base class for validation errors."""

    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidFieldValueError(ValidationError):
    """Field value is invalid."""

    code = "INVALID_FIELD_VALUE"
    message = "Invalid field value"

    def __init__(
        self, message: str | None = None, *, field: str | None = None, value: Any = None
    ):
        msg = message or self.message
        if message is None and field and value is not None:
            msg = f"Invalid value for field '{field}': {value}"
        location = ErrorLocation(field=field) if field else None
        super().__init__(msg, location=location)


class InvalidTimeRangeError(ValidationError):
    """Invalid time range specified."""

    code = "INVALID_TIME_RANGE"
    message = "Invalid time range"

    def __init__(
        self,
        message: str | None = None,
        *,
        start: float | None = None,
        end: float | None = None,
        field: str | None = None,
    ):
        msg = message or self.message
        if message is None and start is not None and end is not None:
            msg = f"Invalid time range: {start}s to {end}s"
        location = ErrorLocation(field=field) if field else None
        super().__init__(msg, location=location)


# =============================================================================
# Render Errors
# =============================================================================


class RenderError(AdreelError):
    """A single render failed at ``stage``."""

    code = "RENDER_FAILED"
    message = "Render failed"
    stage: str = "render"

    def __init__(self, message: str | None = None, *, stage: str | None = None, **kwargs: Any):
        if stage:
            self.stage = stage
        super().__init__(message, **kwargs)

    def __str__(self) -> str:
        return f"[{self.stage}] {self.message}"


class RasterizeError(RenderError):
    """Drawing or PNG encoding of an overlay failed."""

    code = "RASTERIZE_FAILED"
    stage = "rasterize"

    def __init__(self, overlay_id: str, reason: str):
        self.overlay_id = overlay_id
        super().__init__(
            f"Failed to rasterize overlay {overlay_id}: {reason}",
            location=ErrorLocation(overlay_id=overlay_id),
        )


class UnsafePathError(RenderError):
    """A path resolves outside the allow-listed roots."""

    code = "UNSAFE_PATH"
    status_code = 400
    stage = "validate"

    def __init__(self, path: str):
        self.path = path
        super().__init__(
            f"Path escapes allowed directories: {path}",
            location=ErrorLocation(path=path),
        )


class InputNotFoundError(RenderError):
    """An input file is missing or unreadable."""

    code = "INPUT_NOT_FOUND"
    status_code = 400
    stage = "validate"

    def __init__(self, path: str):
        self.path = path
        super().__init__(
            f"Input file not found or not readable: {path}",
            location=ErrorLocation(path=path),
        )


class SubprocessError(RenderError):
    """The external compositor (or prober) failed.

    ``reason`` is one of ``exit``, ``timeout``, ``output_limit``,
    ``missing_output`` or ``not_found``.
    """

    code = "SUBPROCESS_FAILED"
    stage = "encode"

    _CODES_BY_REASON = {
        "timeout": "SUBPROCESS_TIMEOUT",
        "output_limit": "SUBPROCESS_OUTPUT_LIMIT",
        "not_found": "FFMPEG_NOT_FOUND",
    }

    def __init__(
        self,
        message: str,
        *,
        reason: str = "exit",
        returncode: int | None = None,
        stderr: str = "",
        stage: str | None = None,
    ):
        self.reason = reason
        self.returncode = returncode
        self.stderr = stderr
        code = self._CODES_BY_REASON.get(reason)
        detail = message
        if returncode is not None:
            detail = f"{detail} (exit status {returncode})"
        if stderr:
            detail = f"{detail}\n{stderr}"
        super().__init__(detail, stage=stage, code=code)


class PartialBatchFailure(AdreelError):
    """One or more videos in a batch failed while the others were rendered."""

    code = "PARTIAL_BATCH_FAILURE"
    message = "Some videos in the batch failed to render"

    def __init__(self, result: "BatchResult"):
        self.result = result
        failed = len(result.failed)
        super().__init__(f"{failed} of {len(result.items)} renders failed")
