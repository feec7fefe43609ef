"""Dispatch error taxonomy.

Business-rule rejections are deterministic and never retried internally.
Transient errors come from external collaborators (geolocation, routing) and
mean "try again later".
"""

BUSINESS_RULE = "business_rule"
TRANSIENT = "transient"
NOT_FOUND = "not_found"


class DispatchError(Exception):
    code = "dispatch_error"
    category = BUSINESS_RULE
    status_code = 409
    retryable = False

    def __init__(self, message: str, request_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.request_id = request_id

    def to_dict(self) -> dict:
        body = {
            "detail": self.message,
            "error": self.code,
            "category": self.category,
            "retryable": self.retryable,
        }
        if self.request_id:
            body["request_id"] = self.request_id
        return body


class DuplicateActiveRequest(DispatchError):
    code = "duplicate_active_request"


class ParamedicBusy(DispatchError):
    code = "paramedic_busy"


class RequestUnavailable(DispatchError):
    code = "request_unavailable"
    # Safe to retry against a different request id
    retryable = True


class InvalidTransition(DispatchError):
    code = "invalid_transition"


class AlreadyTerminal(InvalidTransition):
    code = "already_terminal"


class ActorNotPermitted(DispatchError):
    code = "actor_not_permitted"
    status_code = 403


class NotFound(DispatchError):
    code = "not_found"
    category = NOT_FOUND
    status_code = 404


class LocationUnavailable(DispatchError):
    code = "location_unavailable"
    category = TRANSIENT
    status_code = 503
    retryable = True


class EstimatorUnavailable(DispatchError):
    code = "estimator_unavailable"
    category = TRANSIENT
    status_code = 503
    retryable = True
