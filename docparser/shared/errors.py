# docparser/shared/errors.py
from __future__ import annotations

from typing import Optional


class AppError(Exception):
    """
    Base of every error the service surfaces on purpose.
    `status_code` and `kind` drive the JSON error body in main.py.
    """

    status_code: int = 500
    kind: str = "internal"
    default_message: str = "Internal error"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


# -------------------------- Client side --------------------------

class InputError(AppError):
    """The error body carries the machine-readable reason; `description` is for logs."""

    status_code = 400
    kind = "input"

    def __init__(self, reason: str, description: Optional[str] = None):
        self.reason = reason
        self.description = description or reason
        super().__init__(reason)


class AuthError(AppError):
    status_code = 401
    kind = "auth"
    default_message = "Missing or invalid actor id"


class ForbiddenError(AppError):
    status_code = 403
    kind = "auth"
    default_message = "Access to this resource is forbidden"


class NotFoundError(AppError):
    status_code = 404
    kind = "not_found"
    default_message = "Resource not found"


class InvalidTransition(AppError):
    status_code = 409
    kind = "conflict"

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move contract from '{current}' to '{target}'")


# -------------------------- Upstream --------------------------

class UpstreamUnavailable(AppError):
    """Transient upstream failure that survived the retry budget."""

    status_code = 503
    kind = "external_transient"
    default_message = "Upstream service unavailable"


class NetworkError(UpstreamUnavailable):
    default_message = "Network error talking to upstream"


class UpstreamTimeout(UpstreamUnavailable):
    default_message = "Upstream call timed out"


class CircuitOpenError(UpstreamUnavailable):
    default_message = "Circuit breaker is open"


class HttpStatusError(AppError):
    """Non-2xx from upstream. 5xx and 429 are transient, other 4xx permanent."""

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        if self.transient:
            self.status_code = 503
            self.kind = "external_transient"
        else:
            self.status_code = 502
            self.kind = "external_permanent"
        super().__init__(f"Upstream returned HTTP {status}")

    @property
    def transient(self) -> bool:
        return self.status >= 500 or self.status == 429


# -------------------------- Pipeline --------------------------

class PipelineError(AppError):
    status_code = 502
    kind = "pipeline"

    def __init__(self, stage: str, message: Optional[str] = None, cause: Optional[BaseException] = None):
        self.stage = stage
        self.cause = cause
        super().__init__(message or f"Pipeline failed at stage '{stage}'")


class RasterError(PipelineError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__("rasterize", message, cause)


class OcrFailure(PipelineError):
    def __init__(self, last_cause: Optional[BaseException] = None):
        self.last_cause = last_cause
        super().__init__("ocr", f"All OCR models failed: {last_cause}", last_cause)


class UnsupportedProvider(PipelineError):
    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__("llm", f"Unsupported LLM provider: {provider_id}")


class ParseError(AppError):
    status_code = 502
    kind = "parse"
    default_message = "Could not parse LLM response"


class StorageError(AppError):
    status_code = 500
    kind = "storage"
    default_message = "Storage failure"
