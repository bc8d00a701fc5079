"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.

Domain errors (validation, not found, authorization, conflict) are raised
synchronously to the invoking command handler or wizard, which phrases them
for the user. Gateway errors are per destination: the propagation engine
folds them into its aggregate result instead of letting them escape.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"
    CONFLICT = "ERR_1007"

    # Ride errors (2xxx)
    RIDE_NOT_FOUND = "ERR_2001"
    RIDE_ALREADY_CANCELLED = "ERR_2002"
    RIDE_NOT_CANCELLED = "ERR_2003"
    RIDE_DUPLICATE_DESTINATION = "ERR_2004"

    # External service errors (5xxx)
    TELEGRAM_ERROR = "ERR_5001"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"
    DESTINATION_UNREACHABLE = "ERR_5005"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"
    SESSION_NOT_FOUND = "ERR_6002"
    INVALID_STATE = "ERR_6003"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationError(AppException):
    """Raised when a ride field is missing or malformed (user-correctable)"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        self.field = field
        if field:
            self.details["field"] = field


class NotFoundError(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class RideNotFoundError(NotFoundError):
    """Raised when a ride id does not exist (distinct from a cancelled ride)"""

    def __init__(self, ride_id: str):
        super().__init__("Ride", ride_id, error_code=ErrorCode.RIDE_NOT_FOUND)
        self.ride_id = ride_id


class AuthorizationError(AppException):
    """Raised when a non-creator attempts a privileged ride operation"""

    def __init__(self, action: str, user_id: int | None = None, ride_id: str | None = None):
        super().__init__(
            message=f"Only the ride creator can {action} this ride",
            error_code=ErrorCode.FORBIDDEN,
            status_code=403,
            details={"action": action, "user_id": user_id, "ride_id": ride_id}
        )
        self.action = action


class ConflictError(AppException):
    """Raised on a redundant state transition"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONFLICT,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )


class DuplicateDestinationError(ConflictError):
    """Raised when a ride is announced twice into the same chat/thread"""

    def __init__(self, ride_id: str, chat_id: int, thread_id: int | None):
        super().__init__(
            message="This ride is already posted in this chat",
            error_code=ErrorCode.RIDE_DUPLICATE_DESTINATION,
            details={"ride_id": ride_id, "chat_id": chat_id, "thread_id": thread_id}
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class GatewayError(ExternalServiceException):
    """
    Delivery failure at a single destination.

    ``permanent=True`` means the platform confirmed the destination is gone
    (bot removed or blocked, chat or message deleted). Anything else is
    transient and the destination must be kept.
    """

    def __init__(
        self,
        service_name: str,
        message: str,
        permanent: bool = False,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            service_name=service_name,
            message=message,
            error_code=ErrorCode.DESTINATION_UNREACHABLE if permanent else error_code,
            details=details
        )
        self.permanent = permanent
        self.details["permanent"] = permanent


# תיאורי שגיאה של Bot API שמעידים שהיעד לא קיים יותר: לא ננסה שוב
PERMANENT_TELEGRAM_DESCRIPTIONS = (
    "message to edit not found",
    "message to delete not found",
    "message can't be edited",
    "message can't be deleted",
    "bot was blocked by the user",
    "bot was kicked",
    "bot is not a member",
    "chat not found",
    "user is deactivated",
    "not enough rights",
    "have no rights to send a message",
    "group chat was upgraded to a supergroup chat",
    "message thread not found",
    "topic_deleted",
    "topic_closed",
)

NOT_MODIFIED_DESCRIPTION = "message is not modified"


class TelegramError(GatewayError):
    """Raised when Telegram API fails"""

    def __init__(
        self,
        message: str,
        permanent: bool = False,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            service_name="telegram",
            message=f"Telegram API error: {message}",
            permanent=permanent,
            error_code=ErrorCode.TELEGRAM_ERROR,
            details=details
        )

    @property
    def description(self) -> str:
        return self.details.get("description") or ""

    @property
    def is_not_modified(self) -> bool:
        """עריכה עם תוכן זהה: טלגרם מחזיר 400 אבל הכרטיס כבר מעודכן"""
        return NOT_MODIFIED_DESCRIPTION in self.description.lower()

    @staticmethod
    def is_permanent_description(description: str) -> bool:
        lowered = (description or "").lower()
        return any(marker in lowered for marker in PERMANENT_TELEGRAM_DESCRIPTIONS)

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "TelegramError":
        """
        יצירת TelegramError מתוך HTTP response בצורה עקבית.

        Bot API מחזיר ``{"ok": false, "error_code": 400, "description": "..."}``;
        הסיווג קבוע/זמני נעשה לפי ה-description, ו-403 תמיד נחשב קבוע
        (הבוט הוסר או נחסם).

        Args:
            operation: שם הפעולה (לדוגמה: sendMessage, editMessageText)
            response: אובייקט response (למשל httpx.Response)
            message: הודעת שגיאה מותאמת (אם לא סופק - נבנית אוטומטית)
            max_response_chars: אורך מקסימלי לשמירת response_text (מניעת לוגים גדולים)
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""

        description = ""
        retry_after = None
        try:
            payload = response.json()
        except Exception:
            payload = None
        if isinstance(payload, dict):
            description = str(payload.get("description") or "")
            parameters = payload.get("parameters") or {}
            if isinstance(parameters, dict):
                retry_after = parameters.get("retry_after")

        permanent = status_code == 403 or cls.is_permanent_description(description)

        return cls(
            message=message or f"{operation} returned status {status_code}: {description}".rstrip(": "),
            permanent=permanent,
            details={
                "operation": operation,
                "status_code": status_code,
                "description": description,
                "retry_after": retry_after,
                "response_text": response_text[:max_response_chars],
            },
        )


class ServiceTimeoutError(GatewayError):
    """Raised when external service times out (always transient)"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            permanent=False,
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(GatewayError):
    """Raised when circuit breaker is open (always transient)"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            permanent=False,
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )


class StateMachineException(AppException):
    """Base exception for state machine errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )


class SessionNotFoundError(StateMachineException):
    """Raised when a wizard action arrives without a live session"""

    def __init__(self, user_id: int, chat_id: int):
        super().__init__(
            message="No active wizard session",
            error_code=ErrorCode.SESSION_NOT_FOUND,
            details={"user_id": user_id, "chat_id": chat_id}
        )
