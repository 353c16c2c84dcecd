"""Domain errors raised by the checkout and reconciliation flows.

Each error carries the HTTP status the API answers with and a short
machine-readable ``code`` for the browser or the processor.
"""


class ShopPaymentsError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = None):
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidRequest(ShopPaymentsError):
    """Bad or empty cart, malformed amount. Not retried."""

    status_code = 400
    code = "invalid_request"


class PaymentProviderError(ShopPaymentsError):
    """The payment processor call failed. The browser may retry."""

    status_code = 502
    code = "payment_provider_error"

    def __init__(self, message: str = None, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable
        if retryable:
            self.status_code = 503


class SignatureVerificationFailed(ShopPaymentsError):
    status_code = 400
    code = "invalid_signature"


class PersistenceError(ShopPaymentsError):
    """A database write failed; the caller is expected to retry the whole request."""

    status_code = 500
    code = "persistence_error"
