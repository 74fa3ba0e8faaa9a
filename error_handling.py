#!/usr/bin/env python3
"""
Error taxonomy and handling for the subsplit agent

This module defines the exceptions raised by the orchestration engine and
the helpers used by the top-level dispatcher to turn them into log lines and
process exit codes.

Features:
- Categorized exceptions carrying an operation context
- Soft-skip vs. fatal classification mapped onto exit codes
- Best-effort decorator for tolerant cleanup steps
- Free disk space guard before copying a mirror
- Per-operation error statistics
"""

import functools
import logging
import time
import traceback
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from enum import Enum

import psutil


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for better handling."""
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    SYNCHRONIZATION = "synchronization"
    EXTRACTION = "extraction"
    PUSH = "push"
    FILESYSTEM = "filesystem"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for error handling."""
    operation: str
    recoverable: bool = True
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    category: ErrorCategory = ErrorCategory.UNKNOWN
    metadata: Dict[str, Any] = None

    def __post_init__(self):
        if self.metadata is None:
            self.metadata = {}


class SubsplitError(Exception):
    """Base exception for the subsplit agent with enhanced context."""

    exit_code = 1

    def __init__(self, message: str, context: ErrorContext = None, cause: Exception = None):
        super().__init__(message)
        self.context = context or ErrorContext(operation="unknown")
        self.cause = cause
        self.timestamp = time.time()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/reporting."""
        return {
            "message": str(self),
            "type": self.__class__.__name__,
            "timestamp": self.timestamp,
            "exit_code": self.exit_code,
            "context": {
                "operation": self.context.operation,
                "severity": self.context.severity.value,
                "category": self.context.category.value,
                "recoverable": self.context.recoverable,
                "metadata": self.context.metadata
            },
            "cause": str(self.cause) if self.cause else None,
            "traceback": traceback.format_exc()
        }


class ConfigurationError(SubsplitError):
    """Missing, unreadable or invalid configuration. Always fatal."""

    exit_code = 1

    def __init__(self, message: str, context: ErrorContext = None, cause: Exception = None):
        if context:
            context.category = ErrorCategory.CONFIGURATION
        else:
            context = ErrorContext(
                operation="configuration",
                category=ErrorCategory.CONFIGURATION,
                severity=ErrorSeverity.CRITICAL,
                recoverable=False
            )
        super().__init__(message, context, cause)


class ValidationError(SubsplitError):
    """Event cannot be processed; the run is skipped without side effects.

    Exits 0 (soft skip) unless ``strict`` is set, in which case it exits 1.
    """

    def __init__(self, message: str, context: ErrorContext = None,
                 cause: Exception = None, strict: bool = False):
        if context:
            context.category = ErrorCategory.VALIDATION
        else:
            context = ErrorContext(
                operation="validation",
                category=ErrorCategory.VALIDATION,
                severity=ErrorSeverity.LOW
            )
        super().__init__(message, context, cause)
        self.strict = strict

    @property
    def exit_code(self) -> int:
        return 1 if self.strict else 0


class MalformedPayload(ValidationError):
    """Payload is not well-formed JSON."""


class UnexpectedShape(ValidationError):
    """Payload decoded to something other than a JSON object."""


class MissingField(ValidationError):
    """A required payload key is absent."""

    def __init__(self, field_name: str, strict: bool = False):
        super().__init__(f"Missing required field: {field_name}", strict=strict)
        self.field_name = field_name
        self.context.metadata["field"] = field_name


class UnconfiguredRepository(ValidationError):
    """No configured project matches the payload's repository URL."""

    def __init__(self, repository_url: str):
        super().__init__(f"Repository {repository_url} is not configured")
        self.repository_url = repository_url
        self.context.metadata["repository_url"] = repository_url


class CommandFailed(SubsplitError):
    """An external command exited with a nonzero status.

    The process exit code is the command's own status so callers upstream can
    tell which tool failed.
    """

    category = ErrorCategory.UNKNOWN

    def __init__(self, message: str, result=None, context: ErrorContext = None, cause: Exception = None):
        if context is None:
            context = ErrorContext(
                operation=self.category.value,
                severity=ErrorSeverity.HIGH,
                recoverable=False
            )
        context.category = self.category
        if result is not None:
            context.metadata["command"] = " ".join(result.command)
            context.metadata["exit_status"] = result.exit_status
        super().__init__(message, context, cause)
        self.result = result

    @property
    def exit_code(self) -> int:
        if self.result is not None and self.result.exit_status:
            return self.result.exit_status
        return 1

    @property
    def output_lines(self) -> List[str]:
        if self.result is None:
            return []
        return list(self.result.output_lines) + list(self.result.error_lines)


class SynchronizationError(CommandFailed):
    """Cloning or fetching the mirror failed."""

    category = ErrorCategory.SYNCHRONIZATION


class ExtractionError(CommandFailed):
    """A history tool failed or produced unusable output."""

    category = ErrorCategory.EXTRACTION


class PushError(CommandFailed):
    """Publishing a split result to its remote failed."""

    category = ErrorCategory.PUSH


class InsufficientDiskSpace(SubsplitError):
    """Not enough free space to copy the mirror for a rewrite."""

    def __init__(self, path: str, available_gb: float, required_gb: float):
        context = ErrorContext(
            operation="disk_space_guard",
            category=ErrorCategory.FILESYSTEM,
            severity=ErrorSeverity.HIGH,
            metadata={
                "path": path,
                "available_disk_gb": available_gb,
                "required_disk_gb": required_gb
            }
        )
        super().__init__(
            f"Insufficient disk space at {path}: {available_gb:.1f}GB available, "
            f"{required_gb}GB required",
            context
        )


class ErrorHandler:
    """Logs errors, keeps statistics and maps them onto exit codes."""

    def __init__(self, logger: logging.Logger = None):
        self.logger = logger or logging.getLogger(__name__)
        self.error_stats: Dict[str, Dict] = {}

    def exit_code_for(self, error: Exception) -> int:
        """Return the process exit code for an error raised during a run."""
        if isinstance(error, SubsplitError):
            return error.exit_code
        return 1

    def handle(self, error: Exception) -> int:
        """Log an error reaching the dispatcher and return its exit code."""
        enhanced = self._enhance_error(error)
        self.log_error(enhanced)
        self._update_error_stats(enhanced)
        return self.exit_code_for(enhanced)

    def _enhance_error(self, error: Exception) -> SubsplitError:
        """Wrap foreign exceptions so they carry a context."""
        if isinstance(error, SubsplitError):
            return error
        if isinstance(error, OSError):
            context = ErrorContext(operation="filesystem", category=ErrorCategory.FILESYSTEM,
                                   severity=ErrorSeverity.HIGH)
            return SubsplitError(str(error), context, error)
        return SubsplitError(str(error), ErrorContext(operation="unknown", severity=ErrorSeverity.HIGH), error)

    def log_error(self, error: SubsplitError):
        """Log error with enhanced context."""
        log_level = {
            ErrorSeverity.LOW: logging.INFO,
            ErrorSeverity.MEDIUM: logging.WARNING,
            ErrorSeverity.HIGH: logging.ERROR,
            ErrorSeverity.CRITICAL: logging.CRITICAL
        }.get(error.context.severity, logging.ERROR)

        self.logger.log(
            log_level,
            f"[{error.context.category.value.upper()}][{error.context.severity.value.upper()}] "
            f"{error.context.operation} | {error}"
        )

        if isinstance(error, CommandFailed):
            for line in error.output_lines:
                self.logger.log(log_level, f"    {line}")

        self.logger.debug(f"Error context: {error.to_dict()}")

    def _update_error_stats(self, error: SubsplitError):
        """Update error statistics for monitoring."""
        operation = error.context.operation
        category = error.context.category.value

        if operation not in self.error_stats:
            self.error_stats[operation] = {
                "total_errors": 0,
                "by_category": {},
                "last_error": None
            }

        stats = self.error_stats[operation]
        stats["total_errors"] += 1
        stats["last_error"] = time.time()
        stats["by_category"][category] = stats["by_category"].get(category, 0) + 1

    def best_effort(self, default_value: Any = None):
        """Decorator for steps whose failure must never abort the run."""

        def decorator(func: Callable) -> Callable:
            @functools.wraps(func)
            def wrapper(*args, **kwargs) -> Any:
                try:
                    return func(*args, **kwargs)
                except (OSError, SubsplitError) as e:
                    self.logger.warning(f"Best-effort step {func.__name__} failed, continuing: {e}")
                    return default_value

            return wrapper
        return decorator

    def disk_space_guard(self, path: str, min_free_gb: float) -> None:
        """Raise InsufficientDiskSpace when ``path`` has less than ``min_free_gb`` free."""
        if min_free_gb <= 0:
            return
        available_gb = psutil.disk_usage(path).free / 1024 / 1024 / 1024
        if available_gb < min_free_gb:
            raise InsufficientDiskSpace(path, available_gb, min_free_gb)

    def get_error_stats(self) -> Dict[str, Any]:
        """Get error statistics summary."""
        return {
            "total_errors": sum(stats["total_errors"] for stats in self.error_stats.values()),
            "operations_with_errors": len(self.error_stats),
            "by_operation": self.error_stats
        }


# Global error handler instance
_global_error_handler = None


def get_error_handler(logger: logging.Logger = None) -> ErrorHandler:
    """Get global error handler instance."""
    global _global_error_handler
    if _global_error_handler is None:
        _global_error_handler = ErrorHandler(logger)
    return _global_error_handler


def best_effort(default_value: Any = None):
    """Convenience decorator for tolerant steps using the global handler."""
    handler = get_error_handler()
    return handler.best_effort(default_value)
