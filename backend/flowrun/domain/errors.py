"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""

    error_code: str = "DOMAIN_ERROR"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a serializable dict for callers"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"


class FlowValidationError(ValidationError):
    """Flow definition validation failed"""
    error_code = "FLOW_VALIDATION_ERROR"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"


class FlowNotFoundError(NotFoundError):
    """Flow definition not found"""
    error_code = "FLOW_NOT_FOUND"


class RunNotFoundError(NotFoundError):
    """Flow run not found"""
    error_code = "RUN_NOT_FOUND"


class StepExecutionNotFoundError(NotFoundError):
    """Step execution not found"""
    error_code = "STEP_EXECUTION_NOT_FOUND"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict (e.g., concurrent modification)"""
    error_code = "CONFLICT"


class InvalidStateError(ConflictError):
    """Action not valid for current state"""
    error_code = "INVALID_STATE"


class AlreadyExistsError(ConflictError):
    """Resource already exists"""
    error_code = "ALREADY_EXISTS"


# External Service Errors
class ExternalServiceError(DomainError):
    """Collaborator failure"""
    error_code = "EXTERNAL_SERVICE_ERROR"


class NotificationSendError(ExternalServiceError):
    """Notification or access token issuance failed"""
    error_code = "NOTIFICATION_SEND_ERROR"


class SubFlowError(ExternalServiceError):
    """Child flow could not be started or propagated"""
    error_code = "SUB_FLOW_ERROR"
