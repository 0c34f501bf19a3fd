"""
Exception hierarchy for foobot.

Purpose
-------
Define the structured exceptions shared by the session, dispatch, render and
store layers. Every exception carries enough metadata for logging and for the
recovery decision made at its component boundary:

- Transport / auth / decode failures are recovered by the Session.
- Handler / store / render failures are recovered by the Dispatcher and turned
  into user-visible error text.
- Configuration, template-directory and store-startup failures are fatal and
  only ever raised during startup.

Design Notes
------------
- All exceptions inherit from `FoobotException`.
- Each exception carries:
  - `message`: human-readable description
  - `details`: additional structured context (dict)
  - `severity`: `ErrorSeverity` value for logging
  - `is_retryable`: whether the failing operation may be attempted again
  - `error_code`: short, stable identifier for programmatic use
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(Enum):
    """Error severity levels for logging."""

    DEBUG = "debug"  # Expected, not concerning (e.g., unknown command)
    INFO = "info"  # Normal operation (e.g., handler rejected input)
    WARNING = "warning"  # Concerning but handled (e.g., reconnects)
    ERROR = "error"  # Unexpected errors requiring attention
    CRITICAL = "critical"  # Process cannot continue


class FoobotException(Exception):
    """
    Base exception for all foobot errors.

    Args:
        message: Human-readable error message
        details: Additional structured data about the error
        severity: Error severity level for logging handlers
        is_retryable: Whether the operation can be retried
        error_code: Optional code for programmatic handling

    Example:
        >>> raise FoobotException(
        ...     "Store unreachable",
        ...     {"dsn_scheme": "mysql+aiomysql"}
        ... )
    """

    DEFAULT_SEVERITY: ErrorSeverity = ErrorSeverity.ERROR
    DEFAULT_RETRYABLE: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[ErrorSeverity] = None,
        is_retryable: Optional[bool] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message: str = message
        self.details: Dict[str, Any] = details or {}
        self.severity: ErrorSeverity = severity or self.DEFAULT_SEVERITY
        self.is_retryable: bool = (
            is_retryable if is_retryable is not None else self.DEFAULT_RETRYABLE
        )
        self.error_code: str = error_code or self.__class__.__name__
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "error_message": self.message,
            "details": self.details,
            "severity": self.severity.value,
            "is_retryable": self.is_retryable,
        }

    def __str__(self) -> str:
        details_str = f" | Details: {self.details}" if self.details else ""
        return f"[{self.error_code}] {self.message}{details_str}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"details={self.details!r}, "
            f"severity={self.severity.value!r}, "
            f"is_retryable={self.is_retryable!r}"
            ")"
        )


# ============================================================================
# Startup (fatal) errors
# ============================================================================


class ConfigurationError(FoobotException):
    """
    Raised when a configuration key is invalid or missing.

    Args:
        config_key: The configuration key that has issues
        message: Description of the configuration problem
    """

    DEFAULT_SEVERITY = ErrorSeverity.CRITICAL

    def __init__(self, config_key: str, message: str) -> None:
        self.config_key = config_key
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            details={"config_key": config_key, "message": message},
            error_code="CONFIG_ERROR",
        )


class TemplateLoadError(FoobotException):
    """Raised when the template directory or a template file cannot be loaded."""

    DEFAULT_SEVERITY = ErrorSeverity.CRITICAL

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(
            f"Cannot load templates from {path}: {reason}",
            details={"path": path, "reason": reason},
            error_code="TEMPLATE_LOAD_ERROR",
        )


class StoreUnavailableError(FoobotException):
    """Raised when the store cannot be reached during startup."""

    DEFAULT_SEVERITY = ErrorSeverity.CRITICAL

    def __init__(self, reason: str) -> None:
        super().__init__(
            f"Store unavailable: {reason}",
            details={"reason": reason},
            error_code="STORE_UNAVAILABLE",
        )


# ============================================================================
# Session errors
# ============================================================================


class TransportError(FoobotException):
    """
    Raised on transport read/write/connect failure.

    Always recoverable: the session degrades and reconnects.
    """

    DEFAULT_SEVERITY = ErrorSeverity.WARNING
    DEFAULT_RETRYABLE = True

    def __init__(self, operation: str, original_error: Optional[BaseException] = None) -> None:
        self.operation = operation
        self.original_error = original_error
        reason = str(original_error) if original_error else "connection lost"
        super().__init__(
            f"Transport error during {operation}: {reason}",
            details={
                "operation": operation,
                "error_type": type(original_error).__name__ if original_error else None,
            },
            error_code="TRANSPORT_ERROR",
        )


class AuthFailed(FoobotException):
    """Raised when the endpoint rejects authentication or does not answer in time."""

    DEFAULT_SEVERITY = ErrorSeverity.WARNING
    DEFAULT_RETRYABLE = True

    def __init__(self, reason: str, *, fatal: bool = False) -> None:
        self.reason = reason
        self.fatal = fatal
        super().__init__(
            f"Authentication failed: {reason}",
            details={"reason": reason, "fatal": fatal},
            severity=ErrorSeverity.CRITICAL if fatal else None,
            is_retryable=not fatal,
            error_code="AUTH_FAILED",
        )


class HeartbeatTimeout(FoobotException):
    """Raised when no heartbeat acknowledgement arrives within the bounded interval."""

    DEFAULT_SEVERITY = ErrorSeverity.WARNING
    DEFAULT_RETRYABLE = True

    def __init__(self, waited: float) -> None:
        self.waited = waited
        super().__init__(
            f"No heartbeat acknowledgement after {waited:.1f}s",
            details={"waited_seconds": waited},
            error_code="HEARTBEAT_TIMEOUT",
        )


class ProtocolDecodeError(FoobotException):
    """Raised for a single malformed frame. The frame is skipped."""

    DEFAULT_SEVERITY = ErrorSeverity.WARNING

    def __init__(self, reason: str, raw: bytes = b"") -> None:
        self.reason = reason
        self.raw = raw
        super().__init__(
            f"Malformed frame: {reason}",
            details={"reason": reason, "raw": raw[:120].decode("utf-8", "replace")},
            error_code="PROTOCOL_DECODE_ERROR",
        )


# ============================================================================
# Dispatch errors
# ============================================================================


class HandlerError(FoobotException):
    """
    Error produced by a command handler.

    Never propagated as a process failure: the Dispatcher binds it to the
    error template and the text is sent back to the chat.

    Args:
        kind: Short error classification shown to the template
        message: User-visible message
    """

    DEFAULT_SEVERITY = ErrorSeverity.INFO

    def __init__(self, kind: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.kind = kind
        super().__init__(
            message,
            details={"kind": kind, **(details or {})},
            error_code="HANDLER_ERROR",
        )


class NoSuchCommandError(HandlerError):
    """Raised by resolving handlers when the command does not exist."""

    DEFAULT_SEVERITY = ErrorSeverity.DEBUG

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__("NoSuchCommand", f"no such command: {name}", {"command": name})


class HandlerTimeout(HandlerError):
    """Raised by the Dispatcher when a handler outlives `handler_timeout`."""

    DEFAULT_SEVERITY = ErrorSeverity.WARNING

    def __init__(self, name: str, timeout: float) -> None:
        self.name = name
        self.timeout = timeout
        super().__init__(
            "HandlerTimeout",
            f"{name} did not finish within {timeout}s",
            {"handler": name, "timeout": timeout},
        )


class PermissionDeniedError(HandlerError):
    """Raised when the sender lacks the permission a command requires."""

    DEFAULT_SEVERITY = ErrorSeverity.DEBUG

    def __init__(self, name: str, required: str) -> None:
        self.name = name
        self.required = required
        super().__init__(
            "PermissionDenied",
            f"{name} requires {required}",
            {"command": name, "required": required},
        )


class StoreError(FoobotException):
    """
    Raised when a store operation fails at runtime.

    Args:
        operation: Description of the store operation that failed
        original_error: The underlying driver exception
    """

    DEFAULT_SEVERITY = ErrorSeverity.ERROR
    DEFAULT_RETRYABLE = True

    def __init__(self, operation: str, original_error: Optional[BaseException] = None) -> None:
        self.operation = operation
        self.original_error = original_error
        reason = str(original_error) if original_error else "unknown failure"
        super().__init__(
            f"Store error during {operation}: {reason}",
            details={
                "operation": operation,
                "error_type": type(original_error).__name__ if original_error else None,
            },
            error_code="STORE_ERROR",
        )


# ============================================================================
# Render errors
# ============================================================================


class TemplateNotFound(FoobotException):
    """Raised when rendering a template name that was never loaded."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(
            f"Template not found: {name}",
            details={"template": name},
            error_code="TEMPLATE_NOT_FOUND",
        )


class RenderError(FoobotException):
    """
    Raised when a context does not satisfy a template.

    `kind` is either ``missing_variable`` or ``type_mismatch``.
    """

    MISSING_VARIABLE = "missing_variable"
    TYPE_MISMATCH = "type_mismatch"

    def __init__(self, template: str, kind: str, reason: str) -> None:
        self.template = template
        self.kind = kind
        self.reason = reason
        super().__init__(
            f"Cannot render {template}: {reason}",
            details={"template": template, "kind": kind},
            error_code="RENDER_ERROR",
        )
