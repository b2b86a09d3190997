import functools
import logging

from django.conf import settings
from django.db import OperationalError, connection, transaction

from .exceptions import OperationTimeout

logger = logging.getLogger(__name__)

# query_canceled (statement_timeout) and lock_not_available (lock_timeout)
TIMEOUT_SQLSTATES = {"57014", "55P03"}


def get_store_timeout_seconds():
    try:
        configured = float(getattr(settings, "FULFILLMENT_STORE_TIMEOUT_SECONDS", 8))
    except (TypeError, ValueError):
        configured = 8.0
    return min(60.0, max(1.0, configured))


def apply_local_timeouts(seconds=None):
    if connection.vendor != "postgresql":
        return
    timeout_ms = int((seconds or get_store_timeout_seconds()) * 1000)
    with connection.cursor() as cursor:
        cursor.execute("SET LOCAL statement_timeout = %s", [timeout_ms])
        cursor.execute("SET LOCAL lock_timeout = %s", [timeout_ms])


def is_timeout_error(exc):
    cause = exc.__cause__ or exc
    sqlstate = getattr(cause, "pgcode", None) or getattr(cause, "sqlstate", None)
    if sqlstate in TIMEOUT_SQLSTATES:
        return True
    message = str(exc).lower()
    return "database is locked" in message or "timeout" in message


def atomic_operation(func):
    """Run ``func`` as one transaction with a bounded store budget.

    A store timeout surfaces as ``OperationTimeout``; nothing is retried here.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            with transaction.atomic():
                apply_local_timeouts()
                return func(*args, **kwargs)
        except OperationalError as exc:
            if is_timeout_error(exc):
                logger.warning("%s exceeded the store budget: %s", func.__name__, exc)
                raise OperationTimeout() from exc
            raise

    return wrapper
