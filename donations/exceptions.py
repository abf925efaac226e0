"""
Error kinds raised by the donation core.

Views and services branch on the class; the persistence layer never leaks
raw ``django.db`` errors, they are translated by :func:`translate_errors`.
"""
import logging
import uuid
from contextlib import contextmanager

from django.db import DatabaseError, OperationalError

logger = logging.getLogger(__name__)

# SQLSTATE for "canceling statement due to user request / statement timeout"
QUERY_CANCELED = "57014"


class DonationsError(Exception):
    code = "error"


class NotFound(DonationsError):
    code = "not_found"


class DuplicateExternalPaymentId(DonationsError):
    code = "duplicate_external_payment_id"


class Forbidden(DonationsError):
    code = "forbidden"


class InvalidArgument(DonationsError):
    code = "invalid_argument"


class Cancelled(DonationsError):
    code = "cancelled"


class StoreFault(DonationsError):
    code = "store_fault"

    def __init__(self, operation, correlation_id=None):
        self.operation = operation
        self.correlation_id = correlation_id or uuid.uuid4().hex
        super().__init__(f"{operation} failed [correlation_id={self.correlation_id}]")


def check_cancelled(cancel, operation):
    """Raise Cancelled if the caller's handle (anything with is_set()) fired."""
    if cancel is not None and cancel.is_set():
        raise Cancelled(operation)


def _is_query_canceled(exc):
    cause = exc.__cause__
    # psycopg 3 exposes sqlstate, psycopg2 pgcode
    code = getattr(cause, "sqlstate", None) or getattr(cause, "pgcode", None)
    return code == QUERY_CANCELED


@contextmanager
def translate_errors(operation, cancel=None):
    """
    Wrap one persistent-store round-trip.

    Checks the cancellation handle first, then maps database failures to
    Cancelled / StoreFault. Domain errors raised inside pass through.
    """
    check_cancelled(cancel, operation)
    try:
        yield
    except DonationsError:
        raise
    except OperationalError as exc:
        if _is_query_canceled(exc):
            raise Cancelled(operation) from exc
        fault = StoreFault(operation)
        logger.error("store fault in %s [correlation_id=%s]", operation, fault.correlation_id, exc_info=True)
        raise fault from exc
    except DatabaseError as exc:
        fault = StoreFault(operation)
        logger.error("store fault in %s [correlation_id=%s]", operation, fault.correlation_id, exc_info=True)
        raise fault from exc
