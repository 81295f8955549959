"""Application errors.

Services raise these; the handlers in ``main.py`` turn them into JSON
responses of the form ``{"detail": ..., "code": ...}``.
"""


class MarketplaceError(Exception):
    """Base application error."""

    code = "internal_error"
    http_status = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class Unauthenticated(MarketplaceError):
    code = "unauthenticated"
    http_status = 401


class InvalidCredential(MarketplaceError):
    code = "invalid_credential"
    http_status = 401


class Forbidden(MarketplaceError):
    code = "forbidden"
    http_status = 403


class NotFound(MarketplaceError):
    code = "not_found"
    http_status = 404


class ValidationError(MarketplaceError):
    code = "validation_error"
    http_status = 400


class Conflict(MarketplaceError):
    code = "conflict"
    http_status = 409


class StorageError(MarketplaceError):
    code = "storage_error"
    http_status = 500


class DatabaseError(MarketplaceError):
    code = "database_error"
    http_status = 500


def same_id(left, right) -> bool:
    """Compare two identifiers after normalizing them to stripped strings."""
    if left is None or right is None:
        return False
    return str(left).strip() == str(right).strip()
