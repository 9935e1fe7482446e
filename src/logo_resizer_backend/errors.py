"""
Exception hierarchy for the resize pipeline.

Pipeline components raise these domain errors; the request handler translates
them into HTTP responses. Each class carries the status code it maps to so the
translation stays in one place.
"""

from __future__ import annotations


class ResizeServiceError(Exception):
    """Base class for every error raised by the resize pipeline."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AdmissionRejected(ResizeServiceError):
    status_code = 429


class RateLimitExceeded(AdmissionRejected):
    def __init__(self, message: str = "Too many requests", retry_after: int = 0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ConcurrencyLimitExceeded(AdmissionRejected):
    def __init__(self, message: str = "Too many concurrent requests") -> None:
        super().__init__(message)


class AuthRejected(ResizeServiceError):
    status_code = 401


class ServerMisconfigured(AuthRejected):
    """Raised when authentication is required but no secret is configured."""

    status_code = 500

    def __init__(self, message: str = "Server misconfigured: missing JWT secret") -> None:
        super().__init__(message)


class ValidationError(ResizeServiceError):
    status_code = 400


class OutputValidationError(ValidationError):
    """Raised when the requested outputs cannot be normalized."""


class UnsupportedMediaError(ValidationError):
    """Raised for uploads whose declared MIME type is not accepted."""


class PayloadTooLarge(ValidationError):
    status_code = 413


class SourceUnreadable(ResizeServiceError):
    status_code = 400

    def __init__(self, message: str = "Unable to read image metadata") -> None:
        super().__init__(message)


class RenderFailure(ResizeServiceError):
    status_code = 500


class ArchiveFailure(ResizeServiceError):
    status_code = 500


class RenderCancelled(ResizeServiceError):
    """Raised when the client went away before rendering finished."""

    status_code = 499

    def __init__(self, message: str = "Client disconnected") -> None:
        super().__init__(message)
