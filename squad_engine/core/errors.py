"""
Squad Engine - Custom Error Types
Structured exceptions for squad coordination errors with recovery hints.
"""
from typing import Dict, Any, Optional
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for the squad engine."""
    # General errors
    UNKNOWN = "UNKNOWN"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"

    # Authorization errors
    PERMISSION_DENIED = "PERMISSION_DENIED"

    # Encounter errors
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    GROUP_NOT_FOUND = "GROUP_NOT_FOUND"
    MEMBER_NOT_FOUND = "MEMBER_NOT_FOUND"

    # Host persistence errors
    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"


class GameError(Exception):
    """
    Base exception for all squad engine errors.

    Provides structured error information with:
    - Error code for programmatic handling
    - Human-readable message
    - Additional context details
    - Recovery hints for the host UI
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.UNKNOWN,
        message: str = "An unexpected error occurred",
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
        recovery_hint: Optional[str] = None,
        http_status: int = 500
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable
        self.recovery_hint = recovery_hint
        self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON response."""
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "details": self.details,
                "recoverable": self.recoverable,
                "recovery_hint": self.recovery_hint
            }
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code.value}, message={self.message!r})"


# =============================================================================
# Authorization Errors
# =============================================================================

class PermissionDeniedError(GameError):
    """Raised when a privileged squad operation is attempted without GM rights."""

    def __init__(self, operation: str):
        super().__init__(
            code=ErrorCode.PERMISSION_DENIED,
            message=f"Only the GM can {operation}",
            details={"operation": operation},
            http_status=403,
            recovery_hint="Ask the GM to perform this action"
        )


# =============================================================================
# Lookup Errors
# =============================================================================

class NotFoundError(GameError):
    """Generic not found error."""

    def __init__(
        self,
        resource: str,
        identifier: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
        recovery_hint: Optional[str] = None,
    ):
        details = {"resource": resource}
        if identifier:
            details["identifier"] = identifier
        super().__init__(
            code=code,
            message=f"{resource} not found",
            details=details,
            http_status=404,
            recovery_hint=recovery_hint
        )


class SessionNotFoundError(NotFoundError):
    """Raised when no active encounter matches the session id."""

    def __init__(self, session_id: Optional[str] = None):
        super().__init__(
            "Encounter",
            session_id,
            code=ErrorCode.SESSION_NOT_FOUND,
            recovery_hint="Start a new encounter"
        )


class GroupNotFoundError(NotFoundError):
    """Raised when a group id has no metadata on the session."""

    def __init__(self, group_id: Optional[str] = None):
        super().__init__(
            "Group",
            group_id,
            code=ErrorCode.GROUP_NOT_FOUND,
            recovery_hint="Refresh the tracker; the group may have been deleted"
        )


class MemberNotFoundError(NotFoundError):
    """Raised when a member id is not part of the encounter."""

    def __init__(self, member_id: Optional[str] = None):
        super().__init__(
            "Combatant",
            member_id,
            code=ErrorCode.MEMBER_NOT_FOUND,
            recovery_hint="Add the combatant to the encounter first"
        )


# =============================================================================
# Validation Error
# =============================================================================

class ValidationError(GameError):
    """Input validation errors."""

    def __init__(self, field: str, message: str, value: Any = None):
        details = {"field": field}
        if value is not None:
            details["value"] = str(value)
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            details=details,
            http_status=400,
            recovery_hint=f"Check the value for '{field}'"
        )


# =============================================================================
# Persistence Errors
# =============================================================================

class PersistenceError(GameError):
    """Raised when the host rejects a batch write of member or group fields."""

    def __init__(self, operation: str, reason: str = "Host write failed"):
        super().__init__(
            code=ErrorCode.PERSISTENCE_FAILED,
            message=f"Failed to {operation}: {reason}",
            details={"operation": operation},
            http_status=500,
            recoverable=True,
            recovery_hint="Retry the action; no partial changes were kept"
        )
