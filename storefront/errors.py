"""Error taxonomy shared by the order and payment apps.

Every error carries the HTTP status it maps to and a short machine-readable
``code`` so views (and ``StoreErrorMiddleware``) can render it without a
lookup table.
"""


class StoreError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = {k: v for k, v in details.items() if v is not None}

    def as_dict(self) -> dict:
        body = {"ok": False, "error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationFailed(StoreError):
    status_code = 400
    code = "invalid"


class NotFound(StoreError):
    status_code = 404
    code = "not_found"


class Forbidden(StoreError):
    status_code = 403
    code = "forbidden"


class InvalidState(StoreError):
    status_code = 409
    code = "invalid_state"


class InsufficientStock(StoreError):
    status_code = 409
    code = "insufficient_stock"


class InvalidCallback(StoreError):
    status_code = 400
    code = "invalid_callback"


class GatewayError(StoreError):
    status_code = 502
    code = "gateway_error"


class GatewayUnavailable(GatewayError):
    """Transient provider failure; a new payment attempt may be started."""
    status_code = 503
    code = "gateway_unavailable"


class GatewayRejected(GatewayError):
    """The provider explicitly refused the request."""
    status_code = 502
    code = "gateway_rejected"
