"""
Error taxonomy shared by the cache, outbox, sync engine and ledger.

Sync-side errors describe where a failure happened (local disk, remote
rejection, unreachable remote); ledger errors are ValueError subclasses so
callers that only care about bad input can catch ValueError.
"""
from typing import Optional


class PosError(Exception):
    """Base class for all POS sync errors."""


class TransientConnectivityError(PosError):
    """The remote store could not be reached (timeout, refused, 5xx)."""


class RemoteRejection(PosError):
    """The remote store answered and refused the write (validation, conflict)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LocalStorageFailure(PosError):
    """A durable local write or read failed; the triggering operation must fail."""


class StatusSubscriberError(PosError):
    """A sync status handler raised; logged and isolated from the drain."""

    def __init__(self, handler, status: str, cause: BaseException):
        name = getattr(handler, '__qualname__', None) or repr(handler)
        super().__init__(f"status handler {name} failed on {status!r}: {cause}")
        self.handler = handler
        self.status = status
        self.cause = cause


class LedgerError(ValueError):
    """Base class for rejected ledger operations."""


class ValidationError(LedgerError):
    """The sale data is incomplete or malformed."""


class InvalidTransition(LedgerError):
    """The requested payment status change is not allowed."""

    def __init__(self, current: str, target: str, reason: str = ""):
        detail = f"cannot move payment from {current} to {target}"
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(detail)
        self.current = current
        self.target = target


class InsufficientTender(LedgerError):
    """Cash tendered does not cover the final total."""

    def __init__(self, tendered: float, total: float):
        super().__init__(f"amount tendered {tendered:.2f} is less than total {total:.2f}")
        self.tendered = tendered
        self.total = total


class RecordNotFound(LedgerError):
    """No current record carries the requested id."""
