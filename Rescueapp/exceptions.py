"""Typed failures raised by the fulfillment core.

Every mutating operation runs inside ``transaction.atomic()``, so raising one of
these rolls the whole operation back. The HTTP adapter maps ``status_code``.
"""


class FulfillmentError(Exception):
    code = "error"
    status_code = 400
    default_detail = "The operation could not be completed."

    def __init__(self, detail=None, *, errors=None):
        self.detail = detail or self.default_detail
        self.errors = errors or {}
        super().__init__(self.detail)

    def as_payload(self):
        payload = {"code": self.code, "detail": self.detail}
        if self.errors:
            payload["errors"] = self.errors
        return payload


class InvalidArgument(FulfillmentError):
    code = "validation-error"
    status_code = 400
    default_detail = "Invalid input."


class NotFound(FulfillmentError):
    code = "not-found"
    status_code = 404
    default_detail = "Referenced entity does not exist."


class Conflict(FulfillmentError):
    code = "conflict"
    status_code = 409
    default_detail = "The operation conflicts with the current state."


class AlreadyAccepted(Conflict):
    code = "already-accepted"
    default_detail = "Quotation is already accepted."


class Forbidden(FulfillmentError):
    code = "forbidden"
    status_code = 403
    default_detail = "You do not have authority over this entity."


class Unavailable(FulfillmentError):
    code = "unavailable"
    status_code = 409
    default_detail = "The selected resource is not available."


class Expired(FulfillmentError):
    code = "expired"
    status_code = 410
    default_detail = "Quotation has expired."


class PreconditionFailed(FulfillmentError):
    code = "precondition-failed"
    status_code = 400
    default_detail = "A required precondition is not met."


class InvalidTransition(FulfillmentError):
    code = "invalid-transition"
    status_code = 409
    default_detail = "Status transition is not allowed."


class Inconsistent(FulfillmentError):
    code = "inconsistent"
    status_code = 500
    default_detail = "Stored state violates a fulfillment invariant."


class OperationTimeout(FulfillmentError):
    code = "timeout"
    status_code = 504
    default_detail = "The store did not answer in time."
