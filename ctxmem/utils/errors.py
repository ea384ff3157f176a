"""Error taxonomy for the context memory subsystem."""

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Standard error codes for ctxmem."""
    # Configuration errors
    CONFIG_NOT_FOUND = "ERR_CONFIG_NOT_FOUND"
    CONFIG_INVALID = "ERR_CONFIG_INVALID"

    # Storage errors
    STORAGE_UNAVAILABLE = "ERR_STORAGE_UNAVAILABLE"
    STORAGE_CORRUPT = "ERR_STORAGE_CORRUPT"

    # Compression errors
    COMPRESSION_FAILED = "ERR_COMPRESSION_FAILED"
    UNKNOWN_ALGORITHM = "ERR_UNKNOWN_ALGORITHM"

    # Import/export errors
    IMPORT_INVALID = "ERR_IMPORT_INVALID"

    # General errors
    INTERNAL = "ERR_INTERNAL"
    VALIDATION = "ERR_VALIDATION"


class ContextMemoryError(Exception):
    """Base exception for ctxmem errors."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INTERNAL,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert error to dictionary for UI layers."""
        return {
            "success": False,
            "error": {
                "code": self.code.value,
                "message": self.message,
                "details": self.details,
            },
        }


class ConfigError(ContextMemoryError):
    """Configuration-related errors."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(
            message=message,
            code=ErrorCode.CONFIG_INVALID,
            details={"path": path} if path else {},
        )


class StorageError(ContextMemoryError):
    """The datastore could not complete an operation.

    Distinct from "not found", which is never an error.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_UNAVAILABLE,
    ) -> None:
        details = {}
        if operation:
            details["operation"] = operation
        super().__init__(message=message, code=code, details=details)


class CompressionError(ContextMemoryError):
    """A strategy could not process its input."""

    def __init__(self, message: str, algorithm: Optional[str] = None) -> None:
        details = {}
        if algorithm:
            details["algorithm"] = algorithm
        super().__init__(
            message=message,
            code=ErrorCode.COMPRESSION_FAILED,
            details=details,
        )


class UnknownAlgorithmError(CompressionError):
    """Payload was produced by an algorithm this engine does not know."""

    def __init__(self, algorithm: str) -> None:
        super().__init__(f"Unknown compression algorithm: {algorithm}", algorithm=algorithm)
        self.code = ErrorCode.UNKNOWN_ALGORITHM


class ImportValidationError(ContextMemoryError):
    """An import document was rejected. Nothing from it was applied."""

    def __init__(
        self,
        message: str,
        record_index: Optional[int] = None,
        record_id: Optional[str] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if record_index is not None:
            details["record_index"] = record_index
        if record_id is not None:
            details["record_id"] = record_id
        super().__init__(
            message=message,
            code=ErrorCode.IMPORT_INVALID,
            details=details,
        )
        self.record_index = record_index
        self.record_id = record_id


class ValidationError(ContextMemoryError):
    """Invalid caller input."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
    ) -> None:
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]  # Truncate for safety
        super().__init__(
            message=message,
            code=ErrorCode.VALIDATION,
            details=details,
        )
