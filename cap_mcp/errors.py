"""Exception types and error codes shared across cap-mcp."""

from enum import Enum
from typing import Any


class AnnotationError(ValueError):
    """Malformed or incomplete @mcp annotation found while parsing the model.

    Raised at parse time only. Registration must not continue past it.
    """


class ODataValidationError(ValueError):
    """An OData query parameter failed validation.

    Attributes:
        parameter: Name of the offending query option (top, skip, select, ...)
        value: The raw value that was rejected
    """

    def __init__(self, message: str, parameter: str = "", value: Any = None):
        super().__init__(message)
        self.message = message
        self.parameter = parameter
        self.value = value


class ToolTimeoutError(TimeoutError):
    """A backing-store call did not finish within the tool time limit."""

    def __init__(self, label: str, timeout_ms: int):
        super().__init__(f"{label} timed out after {timeout_ms}ms")
        self.label = label
        self.timeout_ms = timeout_ms


class ToolErrorCode(str, Enum):
    """Stable error codes returned in tool error payloads."""

    MISSING_KEY = "MISSING_KEY"
    INVALID_INPUT = "INVALID_INPUT"
    FILTER_PARSE_ERROR = "FILTER_PARSE_ERROR"
    ERR_MISSING_SERVICE = "ERR_MISSING_SERVICE"
    QUERY_FAILED = "QUERY_FAILED"
    GET_FAILED = "GET_FAILED"
    CREATE_FAILED = "CREATE_FAILED"
    UPDATE_FAILED = "UPDATE_FAILED"
    DELETE_FAILED = "DELETE_FAILED"
    TIMEOUT = "TIMEOUT"
    NO_FIELDS = "NO_FIELDS"
    HANDLER_NOT_FOUND = "HANDLER_NOT_FOUND"
    OPERATION_FAILED = "OPERATION_FAILED"


class JsonParseErrorType(str, Enum):
    """Failure categories when parsing a JSON configuration string."""

    INVALID_INPUT = "INVALID_INPUT"
    PARSE_ERROR = "PARSE_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"


class JsonConfigError(ValueError):
    """Configuration string could not be turned into a valid config."""

    def __init__(self, error_type: JsonParseErrorType, message: str):
        super().__init__(message)
        self.error_type = error_type
        self.message = message


__all__ = [
    "AnnotationError",
    "ODataValidationError",
    "ToolTimeoutError",
    "ToolErrorCode",
    "JsonParseErrorType",
    "JsonConfigError",
]
