"""Error taxonomy shared by the server routes and the sync client."""

from __future__ import annotations


class AnchorError(RuntimeError):
    code = "error"
    status_code = 400

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFound(AnchorError):
    """Note missing, or owned by somebody else. The two are never told apart."""

    code = "not_found"
    status_code = 404

    def __init__(self, message: str = "Note not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ValidationFailure(AnchorError):
    code = "validation_failed"
    status_code = 400


class TransportFailure(AnchorError):
    """Network or relay unavailable; retryable."""

    code = "transport_failed"
    status_code = 503


class AuthRequired(AnchorError):
    code = "auth_required"
    status_code = 401

    def __init__(self, message: str = "Authentication required", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "AnchorError",
    "NotFound",
    "ValidationFailure",
    "TransportFailure",
    "AuthRequired",
]
