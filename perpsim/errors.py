"""Error types raised inside the ledger and turned into results at the edge."""


class LedgerError(Exception):
    """Base class for every rejection the simulator can report.

    Each subclass carries a ``kind`` that ends up in the ``error`` field
    of a failed settlement result.
    """

    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequestError(LedgerError):
    """A request field is missing, malformed, or out of range."""

    kind = "invalid_request"


class UnauthorizedError(LedgerError):
    """No authenticated user is attached to the request."""

    kind = "unauthorized"


class NotFoundError(LedgerError):
    """The user or position the request refers to does not exist."""

    kind = "not_found"


class PriceUnavailableError(LedgerError):
    """Neither the price feed nor the client price yielded a usable price."""

    kind = "price_unavailable"


class InsufficientBalanceError(LedgerError):
    """The request would spend more than the available balance."""

    kind = "insufficient_balance"


class StorageError(LedgerError):
    """Reading or writing the ledger database failed."""

    kind = "storage"


class ConflictError(LedgerError):
    """Concurrent writes kept invalidating the snapshot the request was built on."""

    kind = "conflict"


class UserExistsError(LedgerError):
    """A user with the same email is already registered."""

    kind = "invalid_request"
