from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class carries an HTTP ``status_code`` and a stable
    ``error_code``:
    - validation_error (400)
    - not_found (404)
    - conflict (409)
    - configuration_error (500)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConfigurationError(ServiceError):
    """Credential or realm configuration is unusable (500).

    Raised at bootstrap for an unknown digest algorithm or a missing realm;
    authentication must not be served until the configuration is fixed.
    """
    status_code = 500
    error_code = "configuration_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "ConfigurationError",
]
