"""
Error taxonomy shared by services and the HTTP layer.

Every error carries an HTTP status and a stable machine-readable ``code`` so
clients can tell apart e.g. an expired balance link from a sold-out variant.
"""
from __future__ import annotations


class OrderFlowError(Exception):
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(OrderFlowError):
    """Malformed or out-of-range input."""
    status_code = 400
    code = "validation_error"


class ConfigurationError(OrderFlowError):
    """Missing required secret or configuration; fatal at startup."""
    status_code = 500
    code = "configuration_error"


class NotFoundError(OrderFlowError):
    status_code = 404
    code = "not_found"


class ForbiddenError(OrderFlowError):
    """Caller is neither the owning party nor holds a valid token."""
    status_code = 403
    code = "forbidden"


class ConflictError(OrderFlowError):
    """Stock unavailable, refund above ceiling, payment amount mismatch."""
    status_code = 409
    code = "conflict"


class SessionExpiredError(OrderFlowError):
    status_code = 410
    code = "balance_session_expired"


class GatewayError(OrderFlowError):
    """External processor failure. Prior state is left untouched."""
    code = "gateway_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool = True,
        gateway_code: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.retryable = retryable
        self.gateway_code = gateway_code

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return 503 if self.retryable else 502
