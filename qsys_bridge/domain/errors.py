"""
Error taxonomy for the control bridge.

Every failure that can reach a tool caller is a ``BridgeError`` carrying a
stable ``code`` and, where useful, a human-actionable ``suggestion``.
"""

from typing import Any, Dict, List, Optional


HOST_SUGGESTION = "Check the QSYS_HOST environment variable or pass host"


class BridgeError(Exception):
    """Base error for all bridge failures"""

    code = "internal_error"
    default_suggestion: Optional[str] = None

    def __init__(
        self,
        message: str,
        suggestion: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion or self.default_suggestion
        self.details = details or {}

    def to_payload(self) -> Dict[str, Any]:
        """Render the error as a tool error payload"""
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        payload.update(self.details)
        return payload


class InvalidArgumentError(BridgeError):
    code = "invalid_argument"


class InvalidPathError(InvalidArgumentError):
    code = "invalid_path"
    default_suggestion = "Use the 'Component.control' format"


class ConfigurationError(BridgeError):
    code = "configuration"


class EngineConnectionError(BridgeError):
    """Connection-level failure; aborts the whole tool call"""

    code = "connection_failed"
    default_suggestion = HOST_SUGGESTION


class MissingHostError(EngineConnectionError):
    code = "missing_host"


class ConnectTimeoutError(EngineConnectionError):
    code = "timeout"


class ConnectionFailedError(EngineConnectionError):
    code = "connection_failed"


class EmptyDesignError(EngineConnectionError):
    code = "empty_design"
    default_suggestion = "Verify the Core is running and has a design loaded"


class FilterNoMatchError(EmptyDesignError):
    code = "filter_no_match"
    default_suggestion = "The connection succeeded but the filter is too strict; relax or remove it"


class NotFoundError(BridgeError):
    code = "not_found"

    def __init__(self, message: str, available: Optional[List[str]] = None, suggestion: Optional[str] = None):
        details = {"available": available} if available is not None else None
        super().__init__(message, suggestion=suggestion, details=details)
        self.available = available or []


class ProtectedControlError(BridgeError):
    code = "protected"
    default_suggestion = "Use force:true to override"


class ReadOnlyControlError(BridgeError):
    code = "read_only"


class ControlValidationError(BridgeError):
    code = "validation"


class WriteRejectedError(BridgeError):
    code = "write_rejected"
    default_suggestion = "Control may be read-only, locked, or require permissions"


class PayloadTooLargeError(BridgeError):
    code = "payload_too_large"
    default_suggestion = "Narrow the request (filter components or request fewer controls)"
