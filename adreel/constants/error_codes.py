"""Error codes dictionary for the render engine.

Single source of truth for error codes, their retryability, and suggested
fixes. Used by ``AdreelError.to_error_info`` to build machine-readable error
payloads for the HTTP surface and batch results.
"""

from typing import TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    suggested_fix: str


ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Validation errors (not retryable, fix input)
    # ==========================================================================
    "VALIDATION_ERROR": {
        "retryable": False,
    },
    "INVALID_FIELD_VALUE": {
        "retryable": False,
    },
    "INVALID_TIME_RANGE": {
        "retryable": False,
        "suggested_fix": "Ensure 0 <= start < end (and end <= video duration for trims)",
    },
    "UNSAFE_PATH": {
        "retryable": False,
        "suggested_fix": "Use a path inside the upload or public directories",
    },
    "INPUT_NOT_FOUND": {
        "retryable": False,
        "suggested_fix": "Re-upload the file and retry with the new path",
    },
    # ==========================================================================
    # Render errors
    # ==========================================================================
    "RENDER_FAILED": {
        "retryable": True,
    },
    "RASTERIZE_FAILED": {
        "retryable": False,
        "suggested_fix": "Check the overlay text and style values",
    },
    "SUBPROCESS_FAILED": {
        "retryable": True,
    },
    "SUBPROCESS_TIMEOUT": {
        "retryable": True,
        "suggested_fix": "Use draft quality or trim the source video",
    },
    "SUBPROCESS_OUTPUT_LIMIT": {
        "retryable": False,
    },
    "FFMPEG_NOT_FOUND": {
        "retryable": False,
        "suggested_fix": "Install FFmpeg or set FFMPEG_PATH",
    },
    "PARTIAL_BATCH_FAILURE": {
        "retryable": True,
        "suggested_fix": "Retry only the failed videos",
    },
    # ==========================================================================
    # System errors
    # ==========================================================================
    "INTERNAL_ERROR": {
        "retryable": True,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get error specification by code.

    Args:
        code: The error code

    Returns:
        ErrorCodeSpec with retryable flag and suggested fix
    """
    return ERROR_CODES.get(code, {"retryable": False})


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    spec = get_error_spec(code)
    return spec.get("retryable", False)
