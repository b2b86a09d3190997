import logging
import traceback

from django.conf import settings
from django.core.exceptions import PermissionDenied, SuspiciousOperation
from django.db import DatabaseError
from django.http import Http404

from .exceptions import FulfillmentError
from .models import ErrorLog, Quotation

logger = logging.getLogger(__name__)


def _client_ip(request):
    forwarded_for = request.META.get("HTTP_X_FORWARDED_FOR", "")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()[:64]
    return request.META.get("REMOTE_ADDR", "")[:64]


def service_request_ref(request):
    """Id of the service request the failing URL targets, if any."""
    match = getattr(request, "resolver_match", None)
    kwargs = match.kwargs if match is not None else {}
    if kwargs.get("request_id") is not None:
        return int(kwargs["request_id"])
    if kwargs.get("quotation_id") is not None:
        return (
            Quotation.objects.filter(id=kwargs["quotation_id"])
            .values_list("service_request_id", flat=True)
            .first()
        )
    return None


def error_code_for(exception):
    if isinstance(exception, FulfillmentError):
        return exception.code
    return type(exception).__name__[:40]


def record_error(request, exception):
    """Store ``exception`` as an ``ErrorLog`` row tied to the request it broke."""
    if not getattr(settings, "ERROR_LOGGING_ENABLED", True):
        return None
    try:
        traceback_max_chars = max(500, int(getattr(settings, "ERROR_LOG_TRACEBACK_MAX_CHARS", 12000)))
        message_max_chars = max(80, int(getattr(settings, "ERROR_LOG_MESSAGE_MAX_CHARS", 500)))
        raw_traceback = "".join(traceback.format_exception(type(exception), exception, exception.__traceback__))
        user = request.user if getattr(request, "user", None) and request.user.is_authenticated else None

        return ErrorLog.objects.create(
            path=(request.path or "")[:300],
            method=(request.method or "")[:10],
            status_code=int(getattr(exception, "status_code", 500) or 500),
            error_code=error_code_for(exception),
            service_request_ref=service_request_ref(request),
            message=str(exception)[:message_max_chars],
            traceback=raw_traceback[:traceback_max_chars],
            request_id=request.headers.get("X-Request-ID", "")[:120],
            ip_address=_client_ip(request),
            user_agent=request.META.get("HTTP_USER_AGENT", "")[:255],
            user=user,
        )
    except (DatabaseError, TypeError, ValueError):
        logger.warning("Could not persist error log for %s", request.path, exc_info=True)
        return None


class ErrorLoggingMiddleware:
    """Record server-side failures that escape the API layer.

    Typed fulfillment errors below 500 are client mistakes and are skipped. The
    API exception handler records 5xx fulfillment errors itself, since those never
    reach this hook.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        return self.get_response(request)

    def process_exception(self, request, exception):
        if isinstance(exception, (Http404, PermissionDenied, SuspiciousOperation)):
            return None
        if isinstance(exception, FulfillmentError) and exception.status_code < 500:
            return None
        logger.error("Unhandled error on %s %s", request.method, request.path, exc_info=exception)
        record_error(request, exception)
        return None
