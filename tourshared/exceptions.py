"""
Exception hierarchy for the TensorTours client core.

This module defines structured exceptions with error codes, context information,
and recovery suggestions so callers can decide between retry, guest fallback,
and forced re-login.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for the TensorTours client."""

    # Authentication Errors (1000-1099)
    AUTH_NO_SESSION = "AUTH_1001"
    AUTH_NO_REFRESH_TOKEN = "AUTH_1002"
    AUTH_REFRESH_REJECTED = "AUTH_1003"
    AUTH_UNVERIFIED_ACCOUNT = "AUTH_1004"
    AUTH_INVALID_CREDENTIALS = "AUTH_1005"
    AUTH_PROVIDER_ERROR = "AUTH_1006"
    AUTH_INSUFFICIENT_PERMISSIONS = "AUTH_1007"

    # Network and Communication Errors (2000-2099)
    NETWORK_REQUEST_FAILED = "NETWORK_2001"
    NETWORK_UNREACHABLE = "NETWORK_2002"
    NETWORK_TIMEOUT = "NETWORK_2003"
    NETWORK_NOT_FOUND = "NETWORK_2004"

    # Storage Errors (3000-3099)
    STORAGE_WRITE_FAILED = "STORAGE_3001"
    STORAGE_READ_FAILED = "STORAGE_3002"
    STORAGE_CLEAR_FAILED = "STORAGE_3003"

    # Validation Errors (4000-4099)
    VALIDATION_INVALID_PAYLOAD = "VALIDATION_4001"
    VALIDATION_MISSING_REQUIRED_FIELD = "VALIDATION_4002"
    VALIDATION_INVALID_INPUT = "VALIDATION_4003"

    # Configuration Errors (8000-8099)
    CONFIG_FILE_NOT_FOUND = "CONFIG_8001"
    CONFIG_INVALID_VALUE = "CONFIG_8002"
    CONFIG_MISSING_REQUIRED_SETTING = "CONFIG_8003"

    # Internal Errors (9000-9099)
    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    REFRESH_TOKEN = "refresh_token"
    SIGN_IN = "sign_in"
    VERIFY_ACCOUNT = "verify_account"
    CONTINUE_AS_GUEST = "continue_as_guest"
    USER_INTERVENTION = "user_intervention"
    IGNORE = "ignore"


class TourClientError(Exception):
    """
    Base exception class for all TensorTours client errors.

    Provides structured error information including error codes, context,
    and recovery suggestions for consistent error handling.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }

    def get_http_status_code(self) -> int:
        """Get the HTTP status code this error corresponds to."""
        status = self.context.get('status')
        if isinstance(status, int):
            return status

        code_mapping = {
            ErrorCode.AUTH_NO_SESSION: 401,
            ErrorCode.AUTH_NO_REFRESH_TOKEN: 401,
            ErrorCode.AUTH_REFRESH_REJECTED: 401,
            ErrorCode.AUTH_INVALID_CREDENTIALS: 401,
            ErrorCode.AUTH_UNVERIFIED_ACCOUNT: 403,
            ErrorCode.AUTH_INSUFFICIENT_PERMISSIONS: 403,
            ErrorCode.VALIDATION_INVALID_PAYLOAD: 502,
            ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD: 400,
            ErrorCode.VALIDATION_INVALID_INPUT: 400,
            ErrorCode.NETWORK_NOT_FOUND: 404,
            ErrorCode.NETWORK_TIMEOUT: 408,
            ErrorCode.NETWORK_UNREACHABLE: 503,
        }

        return code_mapping.get(self.error_code, 500)


# Authentication errors

class AuthenticationError(TourClientError):
    """Authentication related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.AUTH_INVALID_CREDENTIALS, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.HIGH)
        kwargs.setdefault('recovery_actions', [RecoveryAction.REFRESH_TOKEN, RecoveryAction.SIGN_IN])
        super().__init__(message=message, error_code=error_code, **kwargs)


class NoSessionError(AuthenticationError):
    """
    No usable credentials exist.

    Expected on first run or after sign-out; callers usually continue as a guest.
    """

    def __init__(self, message: str = "No authenticated session", error_code: ErrorCode = ErrorCode.AUTH_NO_SESSION, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.LOW)
        kwargs.setdefault('recovery_actions', [RecoveryAction.CONTINUE_AS_GUEST, RecoveryAction.SIGN_IN])
        super().__init__(message, error_code=error_code, **kwargs)


class RefreshRejectedError(AuthenticationError):
    """The refresh token was rejected; the session is dead and was purged."""

    def __init__(self, message: str = "Refresh token rejected", **kwargs):
        kwargs.setdefault('recovery_actions', [RecoveryAction.SIGN_IN])
        super().__init__(message, error_code=ErrorCode.AUTH_REFRESH_REJECTED, **kwargs)


class UnverifiedAccountError(AuthenticationError):
    """Credentials were accepted but the account still needs confirmation."""

    def __init__(self, message: str, username: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if username:
            context['username'] = username
        kwargs.setdefault('severity', ErrorSeverity.LOW)
        kwargs.setdefault('recovery_actions', [RecoveryAction.VERIFY_ACCOUNT])
        super().__init__(message, error_code=ErrorCode.AUTH_UNVERIFIED_ACCOUNT, context=context, **kwargs)
        self.username = username


class IdentityProviderError(AuthenticationError):
    """Coded failure reported by the identity provider."""

    def __init__(self, message: str, provider_code: Optional[str] = None, status: Optional[int] = None, **kwargs):
        context = kwargs.pop('context', {})
        if provider_code:
            context['provider_code'] = provider_code
        if status is not None:
            context['status'] = status
        error_code = kwargs.pop('error_code', ErrorCode.AUTH_PROVIDER_ERROR)
        super().__init__(message, error_code=error_code, context=context, **kwargs)
        self.provider_code = provider_code
        self.status = status


# Network errors

class NetworkError(TourClientError):
    """Network and communication related errors."""

    def __init__(self, message: str, error_code: ErrorCode, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.MEDIUM)
        kwargs.setdefault('recovery_actions', [RecoveryAction.RETRY_WITH_BACKOFF])
        super().__init__(message=message, error_code=error_code, **kwargs)


class RequestFailedError(NetworkError):
    """Non-2xx HTTP response after the single permitted refresh-and-retry."""

    def __init__(self, message: str, status: int, server_message: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        context['status'] = status
        if server_message:
            context['server_message'] = server_message
        error_code = kwargs.pop('error_code', ErrorCode.NETWORK_NOT_FOUND if status == 404 else ErrorCode.NETWORK_REQUEST_FAILED)
        super().__init__(message, error_code=error_code, context=context, **kwargs)
        self.status = status
        self.server_message = server_message


class UnreachableError(NetworkError):
    """Transport-level failure; no response was received at all."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.NETWORK_UNREACHABLE, **kwargs):
        super().__init__(message, error_code=error_code, **kwargs)


# Other categories

class ValidationError(TourClientError):
    """Malformed payload or invalid input."""

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if field_name:
            context['field_name'] = field_name

        error_code = kwargs.pop('error_code', ErrorCode.VALIDATION_INVALID_PAYLOAD)
        severity = kwargs.pop('severity', ErrorSeverity.LOW)
        recovery_actions = kwargs.pop('recovery_actions', [RecoveryAction.IGNORE])

        super().__init__(
            message=message,
            error_code=error_code,
            severity=severity,
            recovery_actions=recovery_actions,
            context=context,
            **kwargs
        )


class StorageError(TourClientError):
    """Secure or local storage failures."""

    def __init__(self, message: str, error_code: ErrorCode, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.RETRY, RecoveryAction.SIGN_IN],
            **kwargs
        )


class ConfigurationError(TourClientError):
    """Configuration related errors."""

    def __init__(self, message: str, error_code: ErrorCode, config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )


def is_expected_auth_error(error: Optional[Exception]) -> bool:
    """Whether an auth error is a normal guest condition rather than a failure."""
    return isinstance(error, NoSessionError)


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> TourClientError:
    """
    Convert a generic exception to a structured TourClientError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured TourClientError
    """
    if isinstance(exception, TourClientError):
        return exception

    if isinstance(exception, TimeoutError):
        return UnreachableError(str(exception), error_code=ErrorCode.NETWORK_TIMEOUT,
                                context=context, cause=exception)
    if isinstance(exception, ConnectionError):
        return UnreachableError(str(exception), context=context, cause=exception)
    if isinstance(exception, FileNotFoundError):
        return ConfigurationError(str(exception), ErrorCode.CONFIG_FILE_NOT_FOUND,
                                  context=context, cause=exception)
    if isinstance(exception, (ValueError, KeyError, TypeError)):
        return ValidationError(str(exception), context=context, cause=exception)

    return TourClientError(
        message=str(exception),
        error_code=default_error_code,
        context=context,
        cause=exception
    )
