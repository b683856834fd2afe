"""Exception hierarchy for engine compilation, execution and detection.

Every error raised by edge_rt derives from EdgeRTError so callers can
distinguish engine failures from programming errors (ValueError,
RuntimeError). Only CacheLoadError is recoverable; the engine and
detector handle it by rebuilding from the model files. Everything else
propagates to the caller unchanged and is never retried.
"""

from __future__ import annotations

from typing import Any


class EdgeRTError(Exception):
    """Base exception for all edge_rt errors."""

    default_message: str = "An unexpected inference error occurred"
    default_error_code: str = "EDGE_RT_ERROR"

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# Model compilation
class ModelParseError(EdgeRTError):
    default_message = "Failed to parse model description or weights"
    default_error_code = "MODEL_PARSE_ERROR"


class ModelMismatchError(EdgeRTError):
    default_message = "Compiled model bindings do not match registered bindings"
    default_error_code = "MODEL_MISMATCH"


class EngineBuildError(EdgeRTError):
    default_message = "Unable to create engine"
    default_error_code = "ENGINE_BUILD_ERROR"


class UnsupportedPrecisionError(EdgeRTError):
    default_message = "Precision mode is not supported on this device"
    default_error_code = "UNSUPPORTED_PRECISION"

    def __init__(
        self,
        message: str | None = None,
        *,
        precision: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if precision:
            details["precision"] = precision
        super().__init__(message, details=details, **kwargs)


# Cache
class CacheLoadError(EdgeRTError):
    """Cache artifact is missing, corrupt or stale.

    Recoverable: the caller falls back to a full build followed by a
    fresh save_cache.
    """

    default_message = "Unable to load engine cache"
    default_error_code = "CACHE_LOAD_ERROR"

    def __init__(
        self,
        message: str | None = None,
        *,
        path: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if path:
            details["path"] = path
        super().__init__(message, details=details, **kwargs)


# Execution
class BatchSizeExceededError(EdgeRTError):
    default_message = "Batch size exceeds the compiled maximum"
    default_error_code = "BATCH_SIZE_EXCEEDED"

    def __init__(
        self,
        message: str | None = None,
        *,
        batch_size: int | None = None,
        max_batch_size: int | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if batch_size is not None:
            details["batch_size"] = batch_size
        if max_batch_size is not None:
            details["max_batch_size"] = max_batch_size
        if message is None and batch_size is not None and max_batch_size is not None:
            message = f"Batch size {batch_size} exceeds compiled maximum {max_batch_size}"
        super().__init__(message, details=details, **kwargs)


class DeviceMemoryError(EdgeRTError):
    """Device allocation, copy or execution failed. Fatal, never retried."""

    default_message = "Device memory operation failed"
    default_error_code = "DEVICE_MEMORY_ERROR"


# Detection
class UnsupportedInputFormatError(EdgeRTError):
    default_message = "Unsupported network input format"
    default_error_code = "UNSUPPORTED_INPUT_FORMAT"
