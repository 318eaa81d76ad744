class ListingError(Exception):
    """Base error for listing operations."""


class ValidationError(ListingError):
    """Raised when input is missing, malformed or out of range."""


class NotFoundError(ListingError):
    """Raised when the requested entity does not exist."""


class InvalidTransitionError(ListingError):
    """Raised when a status change is not allowed from the current state."""


class SignatureError(ListingError):
    """Raised when a payment webhook fails signature verification."""


class ExternalServiceError(ListingError):
    """Raised when the payment provider is unreachable or rejects a request."""


class RepositoryUnavailableError(ListingError):
    """Raised when the database is unavailable or not configured."""


class DuplicateReferenceError(ListingError):
    """Raised when a payment reuses an external reference already on record."""
