# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Custom exceptions for criage.

All exceptions inherit from CriageError for consistent error handling
in the installer and in the repository server.
"""

from typing import Optional


class CriageError(Exception):
    """Base exception for all criage errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[dict] = None
    ):
        """
        Initialize criage error.

        Args:
            message: Human-readable error message
            status_code: HTTP status code
            details: Additional error details
        """
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert error to dictionary for API response."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "status_code": self.status_code,
            "details": self.details
        }


class NotFoundError(CriageError):
    """Package, version, file, repository or config key not found."""

    def __init__(self, resource: str, identifier: str, details: Optional[dict] = None):
        """
        Initialize not found error.

        Args:
            resource: Type of resource (e.g., "Package", "Version")
            identifier: Resource identifier
            details: Additional error details
        """
        message = f"{resource} not found: {identifier}"
        super().__init__(message, status_code=404, details=details)
        self.resource = resource
        self.identifier = identifier


class ValidationError(CriageError):
    """Validation failed."""

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, status_code=400, details=details)
        self.field = field


class UnsupportedFormatError(CriageError):
    """Archive format is not one of the recognized formats."""

    def __init__(self, archive_format: str, details: Optional[dict] = None):
        super().__init__(
            f"Unsupported archive format: {archive_format}",
            status_code=400,
            details=details
        )
        self.archive_format = archive_format


class PathTraversalError(CriageError):
    """Archive entry resolves outside the extraction root."""

    def __init__(self, entry: str, destination: str, details: Optional[dict] = None):
        super().__init__(
            f"Archive entry escapes destination {destination}: {entry}",
            status_code=400,
            details=details
        )
        self.entry = entry
        self.destination = destination


class MetadataNotFoundError(CriageError):
    """Archive carries no embedded metadata block."""

    def __init__(self, archive_path: str, details: Optional[dict] = None):
        super().__init__(
            f"No embedded metadata in archive: {archive_path}",
            status_code=404,
            details=details
        )
        self.archive_path = archive_path


class DependencyError(CriageError):
    """A required dependency could not be installed."""

    def __init__(self, message: str, package: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, status_code=424, details=details)
        self.package = package


class HookExecutionError(CriageError):
    """A lifecycle hook or build command exited non-zero."""

    def __init__(self, command: str, exit_code: int, details: Optional[dict] = None):
        super().__init__(
            f"Command failed with exit code {exit_code}: {command}",
            status_code=500,
            details=details
        )
        self.command = command
        self.exit_code = exit_code


class NetworkError(CriageError):
    """Repository unreachable or answered with a non-success status."""

    def __init__(self, message: str, url: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, status_code=502, details=details)
        self.url = url


class IntegrityError(CriageError):
    """Checksum or signature verification failed."""

    def __init__(self, message: str, path: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, status_code=422, details=details)
        self.path = path


class ConfigError(CriageError):
    """Malformed configuration value."""

    def __init__(self, message: str, key: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, status_code=500, details=details)
        self.key = key


class UnauthorizedError(CriageError):
    """Unauthorized access."""

    def __init__(self, message: str = "Invalid token", details: Optional[dict] = None):
        super().__init__(message, status_code=401, details=details)


# Error Message Utilities

def sanitize_error_for_user(error: Exception, include_type: bool = True) -> str:
    """
    Sanitize error messages for user display.
    Removes stack traces and overly long messages.

    Args:
        error: The exception to sanitize
        include_type: Whether to include exception type

    Returns:
        User-friendly error message without stack trace
    """
    error_msg = str(error).strip()

    # Limit message length
    if len(error_msg) > 500:
        error_msg = error_msg[:500] + "..."

    if include_type:
        return f"{error.__class__.__name__}: {error_msg}"

    return error_msg
