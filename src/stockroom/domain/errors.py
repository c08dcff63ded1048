class AppError(Exception):
    """Base app error."""

    status_code = 500


class ValidationError(AppError):
    status_code = 400


class NotFoundError(AppError):
    status_code = 404


class InsufficientStockError(AppError):
    status_code = 400


class ConflictError(AppError):
    status_code = 409


class ConcurrentUpdateError(ConflictError):
    """A stock write lost a race against another writer and can be retried."""


class RetryExhaustedError(ConflictError):
    status_code = 503


class StorageError(AppError):
    status_code = 500
