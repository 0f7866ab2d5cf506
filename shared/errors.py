"""
Shared error handling for the Business Rule Engine.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class RuleEngineException(Exception):
    """Base exception for the rule engine and its service."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(RuleEngineException):
    """Request validation errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class MatchingError(RuleEngineException):
    """Malformed trigger or condition spec on a single rule."""

    def __init__(self, message: str = "Rule matching failed", details: Optional[Dict[str, Any]] = None,
                 code: str = "MATCHING_ERROR"):
        super().__init__(code, message, details)


class ConfigurationError(MatchingError):
    """A rule's trigger configuration cannot be evaluated (missing table, unknown trigger)."""

    def __init__(self, message: str = "Rule configuration error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="CONFIGURATION_ERROR")


class ActionError(RuleEngineException):
    """A single action failed; stops the remaining actions of the rule."""

    def __init__(self, message: str = "Action failed", action_index: Optional[int] = None,
                 action_type: Optional[str] = None, details: Optional[Dict[str, Any]] = None,
                 code: str = "ACTION_ERROR"):
        self.action_index = action_index
        self.action_type = action_type
        details = dict(details or {})
        if action_index is not None:
            details.setdefault("action_index", action_index)
        if action_type is not None:
            details.setdefault("action_type", action_type)
        super().__init__(code, message, details)

    def bind(self, action_index: int, action_type: str) -> "ActionError":
        """Attach the position of the failing action unless already known."""
        if self.action_index is None:
            self.action_index = action_index
            self.details.setdefault("action_index", action_index)
        if self.action_type is None:
            self.action_type = action_type
            self.details.setdefault("action_type", action_type)
        return self


class ActionValidationError(ActionError):
    """Action parameters failed validation at dispatch time."""

    def __init__(self, message: str = "Invalid action parameters", **kwargs):
        super().__init__(message, code="ACTION_VALIDATION_ERROR", **kwargs)


class ActionTimeoutError(ActionError):
    """An action did not complete within its time budget."""

    def __init__(self, message: str = "Action timed out", **kwargs):
        super().__init__(message, code="ACTION_TIMEOUT", **kwargs)


class StoreError(RuleEngineException):
    """Rule Store or Execution Log Store unavailable."""

    def __init__(self, store: str, message: str = "Store unavailable", details: Optional[Dict[str, Any]] = None):
        self.store = store
        super().__init__("STORE_ERROR", f"{store}: {message}", details)


class ExternalServiceError(RuleEngineException):
    """External service errors."""

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        self.service = service
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


class ExternalServiceRejection(ExternalServiceError):
    """External service refused the request (bad template, invalid recipient, unknown record)."""

    def __init__(self, service: str, message: str = "Request rejected", details: Optional[Dict[str, Any]] = None):
        super().__init__(service, message, details)
        self.code = "EXTERNAL_SERVICE_REJECTED"
