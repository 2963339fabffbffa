"""Custom exceptions for the Nudge backend."""

from typing import Any

# Exception type → safe user-facing message mapping
_SAFE_MESSAGES: dict[str, str] = {
    "NotFoundError": "The requested resource was not found.",
    "AuthenticationError": "Authentication failed. Please log in again.",
    "AuthorizationError": "You do not have permission to perform this action.",
    "ValidationError": "The provided input is invalid. Please check and try again.",
    "InvalidStatusTransitionError": "This follow-up cannot move to the requested status.",
    "ConflictError": "A conflict occurred. Please refresh and try again.",
    "DatabaseError": "A database error occurred. Please try again.",
    "MailAuthError": "Your mailbox connection needs to be re-authorized.",
    "ExternalServiceError": "An external service is temporarily unavailable.",
    "EmailDraftError": "Draft generation failed. Please try again.",
    "EmailSendError": "The follow-up could not be sent.",
    "ValueError": "The provided value is invalid.",
}

_DEFAULT_MESSAGE = "An error occurred. Please try again."


def sanitize_error(e: Exception) -> str:
    """Map an exception to a safe, user-facing error message.

    Walks the exception's MRO so subclasses inherit the message of the
    closest mapped ancestor.

    Args:
        e: The exception to sanitize.

    Returns:
        A safe, generic error message string.
    """
    for cls in type(e).__mro__:
        safe_msg = _SAFE_MESSAGES.get(cls.__name__)
        if safe_msg:
            return safe_msg

    return _DEFAULT_MESSAGE


class NudgeException(Exception):
    """Base exception for all Nudge-specific errors."""

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize Nudge exception.

        Args:
            message: Human-readable error message.
            code: Machine-readable error code.
            status_code: HTTP status code.
            details: Additional error details.
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class NotFoundError(NudgeException):
    """Resource not found error (404)."""

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        """Initialize not found error.

        Args:
            resource: Name of the resource that was not found.
            resource_id: Optional ID of the resource.
        """
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' not found"
        super().__init__(
            message=message,
            code="NOT_FOUND",
            status_code=404,
            details={"resource": resource, "resource_id": resource_id},
        )


class AuthenticationError(NudgeException):
    """Authentication failed error (401)."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(
            message=message,
            code="AUTHENTICATION_ERROR",
            status_code=401,
        )


class AuthorizationError(NudgeException):
    """Authorization/permission denied error (403)."""

    def __init__(self, message: str = "Permission denied") -> None:
        super().__init__(
            message=message,
            code="AUTHORIZATION_ERROR",
            status_code=403,
        )


class ValidationError(NudgeException):
    """Input validation error (400)."""

    def __init__(self, message: str, field: str | None = None) -> None:
        """Initialize validation error.

        Args:
            message: Error message.
            field: Optional name of the offending field.
        """
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=400,
            details={"field": field} if field else {},
        )


class ConflictError(NudgeException):
    """Resource conflict error (409)."""

    def __init__(self, message: str, resource: str | None = None) -> None:
        """Initialize conflict error.

        Args:
            message: Error message.
            resource: Name of the conflicting resource.
        """
        details = {}
        if resource:
            details["resource"] = resource
        super().__init__(
            message=message,
            code="CONFLICT",
            status_code=409,
            details=details,
        )


class InvalidStatusTransitionError(NudgeException):
    """Follow-up status transition not permitted by the lifecycle (409)."""

    def __init__(self, task_id: str, current_status: str, target_status: str) -> None:
        """Initialize invalid status transition error.

        Args:
            task_id: The follow-up task ID.
            current_status: Status the task is currently in.
            target_status: Status that was requested.
        """
        super().__init__(
            message=(
                f"Cannot move follow-up '{task_id}' from '{current_status}' "
                f"to '{target_status}'"
            ),
            code="INVALID_STATUS_TRANSITION",
            status_code=409,
            details={
                "task_id": task_id,
                "current_status": current_status,
                "target_status": target_status,
            },
        )


class DatabaseError(NudgeException):
    """Database operation error (500)."""

    def __init__(self, message: str = "A database error occurred") -> None:
        super().__init__(
            message=message,
            code="DATABASE_ERROR",
            status_code=500,
        )


class ExternalServiceError(NudgeException):
    """External service error (502)."""

    def __init__(self, service: str, message: str | None = None) -> None:
        """Initialize external service error.

        Args:
            service: Name of the external service.
            message: Optional error message.
        """
        error_message = message or f"Error communicating with {service}"
        super().__init__(
            message=error_message,
            code="EXTERNAL_SERVICE_ERROR",
            status_code=502,
            details={"service": service},
        )


class MailAuthError(ExternalServiceError):
    """Mailbox credentials are missing or were revoked."""

    def __init__(self, user_id: str, message: str | None = None) -> None:
        super().__init__(
            service="mail",
            message=message or f"Mailbox not authorized for user {user_id}",
        )
        self.code = "MAIL_AUTH_ERROR"
        self.status_code = 401
        self.details["user_id"] = user_id


class EmailDraftError(NudgeException):
    """Exception for follow-up draft generation errors."""

    def __init__(
        self,
        message: str = "Unknown error",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=f"Email draft operation failed: {message}",
            code="EMAIL_DRAFT_ERROR",
            status_code=500,
            details=details,
        )


class EmailSendError(NudgeException):
    """Exception for follow-up delivery errors."""

    def __init__(
        self,
        message: str = "Unknown error",
        task_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize email send error.

        Args:
            message: Error details.
            task_id: Optional ID of the follow-up that failed to send.
            details: Additional error details.
        """
        error_details = details or {}
        if task_id:
            error_details["task_id"] = task_id
        super().__init__(
            message=f"Email send failed: {message}",
            code="EMAIL_SEND_ERROR",
            status_code=502,
            details=error_details,
        )
