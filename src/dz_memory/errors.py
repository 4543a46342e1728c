"""
Typed failures raised by the services and mapped to error envelopes by the
dispatcher.  Storage errors are never wrapped in these.
"""

from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Failure with a stable machine-readable ``code``."""

    code: str = "DOMAIN_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}


class ValidationError(DomainError):
    """Caller input rejected before any storage mutation."""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = dict(details or {})
        if field is not None:
            details["field"] = field
        super().__init__(message, details=details)
        self.field = field


class NotFoundError(DomainError):
    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        message = f"{resource} not found: {resource_id}" if resource_id else f"{resource} not found"
        super().__init__(message, details={"id": resource_id} if resource_id else None)
        self.resource = resource
        self.resource_id = resource_id
