from __future__ import annotations


class LedgerEngineError(RuntimeError):
    pass


class InvalidTransactionError(ValueError):
    """Rejected before any write: bad amount/type/price/date or malformed record."""


class ImmutableFieldError(InvalidTransactionError):
    """An amendment touched a field outside the user-editable set."""


class TransactionNotFoundError(LedgerEngineError):
    pass


class PositionNotFoundError(LedgerEngineError):
    pass


class StoreUnavailableError(LedgerEngineError):
    """
    Transient durable-store failure (timeout, connectivity loss).

    The transaction façade absorbs this into degraded mode; it is never
    surfaced to callers of add/update/delete.
    """


class InvalidPositionTransition(ValueError):
    pass
