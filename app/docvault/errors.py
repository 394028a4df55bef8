"""
Error taxonomy shared by the core and the HTTP layer.

Every error carries a stable ``kind`` and the HTTP status the API renders it
with. Nothing in the core swallows these; callers decide what to retry.
"""

from __future__ import annotations


class DocVaultError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class AuthenticationError(DocVaultError):
    """Missing or unknown API key."""

    kind = "authentication"
    status_code = 401


class AuthorizationError(DocVaultError):
    """Known principal whose role does not allow the operation."""

    kind = "authorization"
    status_code = 403


class ValidationError(DocVaultError):
    kind = "validation"
    status_code = 400


class NotFoundError(DocVaultError):
    kind = "not_found"
    status_code = 404


class ConflictError(DocVaultError):
    """Uniqueness or concurrent-update race. Retryable with fresh data."""

    kind = "conflict"
    status_code = 409


class StorageError(DocVaultError):
    """Transaction, connection or blob storage failure."""

    kind = "storage"
    status_code = 500
