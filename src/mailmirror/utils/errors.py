"""Centralized error hierarchy and handling helpers."""

from enum import Enum
from typing import Any, Dict, Optional

from mailmirror.utils.logging import get_logger

_logger = None


def _get_logger():
    """Get logger with lazy initialisation."""
    global _logger
    if _logger is None:
        _logger = get_logger(__name__)
    return _logger


## Error Categories


class ErrorCategory(Enum):
    """Categories of errors for better handling."""

    DATABASE = "database"
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    FILE_SYSTEM = "file_system"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


## Custom Exceptions


class MailMirrorError(Exception):
    """Base exception for all mailmirror errors."""

    category = ErrorCategory.UNKNOWN
    user_message = "An error occurred"

    def __init__(
        self, message: str | None = None, details: Dict[str, Any] | None = None
    ):
        """Initialise MailMirrorError with optional message and details."""
        self.message = message or self.user_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error details to a dictionary."""
        return {
            "error_type": self.__class__.__name__,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
        }


## Database (local store) Errors


class DatabaseError(MailMirrorError):
    """Base exception for local store and change queue failures."""

    category = ErrorCategory.DATABASE
    user_message = "A local storage error occurred"


class DatabaseConnectionError(DatabaseError):
    """Exception for database connection failures."""

    user_message = "Failed to open the local mailbox cache"


class DatabaseTransactionError(DatabaseError):
    """Exception for database transaction failures."""

    user_message = "A local storage transaction failed"


class MessageNotFoundError(DatabaseError):
    """Exception when a message is not in the local cache."""

    user_message = "Message not found"


## Remote (network) Errors


class RemoteError(MailMirrorError):
    """Base exception for mailbox service errors."""

    category = ErrorCategory.NETWORK
    user_message = "The mail server request failed"

    #: Whether the sync engine may retry the same request later.
    retryable = False

    def __init__(
        self,
        message: str | None = None,
        details: Dict[str, Any] | None = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code


class TransientRemoteError(RemoteError):
    """Network failure, timeout or 5xx response."""

    user_message = "The mail server is temporarily unreachable"
    retryable = True


class RateLimitedError(TransientRemoteError):
    """The server asked us to slow down."""

    user_message = "The mail server is rate limiting requests"

    def __init__(
        self,
        message: str | None = None,
        details: Dict[str, Any] | None = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, details, status_code)
        self.retry_after = retry_after


class AuthExpiredError(RemoteError):
    """The access token was refused by the server."""

    user_message = "The access token has expired"


class RejectedError(RemoteError):
    """The server permanently refused a request (e.g. message gone)."""

    user_message = "The mail server rejected the change"


class StaleCursorError(RemoteError):
    """The server no longer has history for the stored cursor."""

    user_message = "Mailbox history expired, a full resync is needed"


class InvalidGrantError(RemoteError):
    """The token endpoint refused the refresh token."""

    category = ErrorCategory.AUTHENTICATION
    user_message = "The stored refresh token is no longer valid"


## Authentication Errors


class AuthenticationError(MailMirrorError):
    """Base exception for authentication-related errors."""

    category = ErrorCategory.AUTHENTICATION
    user_message = "An authentication error occurred"


class ReauthRequiredError(AuthenticationError):
    """The user must run the OAuth flow again."""

    user_message = "Sign-in required: please re-authenticate"


class MissingCredentialsError(AuthenticationError):
    """Exception for a missing OAuth client secret."""

    user_message = "OAuth client secret not configured"


## Validation Errors


class ValidationError(MailMirrorError):
    """Base exception for validation-related errors."""

    category = ErrorCategory.VALIDATION
    user_message = "Invalid input"


## File System Errors


class FileSystemError(MailMirrorError):
    """Base exception for file system-related errors."""

    category = ErrorCategory.FILE_SYSTEM
    user_message = "A file system error occurred"


## Configuration Errors


class ConfigurationError(MailMirrorError):
    """Base exception for configuration-related errors."""

    category = ErrorCategory.CONFIGURATION
    user_message = "A configuration error occurred"


class MissingConfigError(ConfigurationError):
    """Exception for missing configuration settings."""

    user_message = "Missing configuration settings"


class InvalidConfigError(ConfigurationError):
    """Exception for invalid configuration settings."""

    user_message = "Invalid configuration settings"


## Key Store Errors


class KeyStoreError(MailMirrorError):
    """Base exception for key store-related errors."""

    category = ErrorCategory.AUTHENTICATION
    user_message = "A key store error occurred"


class EncryptionError(KeyStoreError):
    """Exception for encryption/decryption failures."""

    user_message = "Failed to encrypt/decrypt data"


## Error Handler


class ErrorHandler:
    """Centralized error handling and logging."""

    @staticmethod
    def handle(
        error: Exception, context: str = "", log_traceback: bool = True
    ) -> Dict[str, Any]:
        """Log an error and return a serialisable description of it."""
        if isinstance(error, MailMirrorError):
            _get_logger().error(f"{context}: {error.message}", extra={"context": error.details})
            if log_traceback:
                _get_logger().exception(error)
            return error.to_dict()

        _get_logger().error(f"{context}: {str(error)}")
        if log_traceback:
            _get_logger().exception(error)
        return {
            "error_type": "UnknownError",
            "category": ErrorCategory.UNKNOWN.value,
            "message": str(error),
            "details": {"context": context},
        }


def format_error_message(error: Exception) -> str:
    """Format an error message for display."""
    if isinstance(error, MailMirrorError):
        return error.message
    return "An unexpected error occurred - check logs for details."
