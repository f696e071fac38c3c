"""Business and infrastructure errors raised by the data-access layer.

Relational errors are not wrapped: SQLAlchemy exceptions propagate to the
caller as-is so the HTTP layer can classify them.
"""


class TaskApiError(Exception):
    """Base class for errors the HTTP layer knows how to map."""

    status_code = 500
    code = "INTERNAL_ERROR"


class CacheUnavailableError(TaskApiError):
    """The cache backend refused the connection or could not be resolved."""

    status_code = 503
    code = "CACHE_UNAVAILABLE"


class QueryValidationError(TaskApiError):
    """Malformed sort/order/pagination/filter input, rejected before any query."""

    status_code = 400
    code = "VALIDATION_ERROR"


class ReferentialConstraintError(TaskApiError):
    """A referenced row does not exist or belongs to another user."""

    status_code = 400
    code = "INVALID_REFERENCE"


class ConflictError(TaskApiError):
    status_code = 409
    code = "DUPLICATE_RESOURCE"
