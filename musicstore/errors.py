"""Checkout failure taxonomy.

Every error carries a stable ``code`` for the wire, the HTTP status the route
maps it to, and whether re-running the whole checkout is safe.
"""


class CheckoutError(Exception):
    code = "checkout_error"
    http_status = 500
    retryable = False
    default_message = "checkout failed"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self):
        return {"code": self.code, "message": self.message}


class ValidationError(CheckoutError):
    code = "invalid_request"
    http_status = 400
    default_message = "invalid checkout request"


class InvalidAmount(ValidationError):
    code = "invalid_amount"
    default_message = "amount must be a positive integer in minor currency units"


class IdempotencyKeyConflict(ValidationError):
    code = "idempotency_key_conflict"
    http_status = 409
    default_message = "idempotency key was already used for a different request"


class IdempotencyInProgress(ValidationError):
    code = "idempotency_in_progress"
    http_status = 409
    retryable = True
    default_message = "a checkout with this idempotency key is already in progress"


class NoStoredPaymentMethod(CheckoutError):
    code = "no_stored_payment_method"
    http_status = 400
    default_message = "no saved card for this customer"


class GatewayRejectedToken(CheckoutError):
    code = "card_token_rejected"
    http_status = 400
    default_message = "card token is invalid or expired"


class ChargeDeclined(CheckoutError):
    code = "charge_declined"
    http_status = 402
    default_message = "card was declined"

    def __init__(self, message=None, reason=None):
        super().__init__(message)
        self.reason = reason

    def to_dict(self):
        data = super().to_dict()
        if self.reason:
            data["reason"] = self.reason
        return data


class VaultUnavailable(CheckoutError):
    code = "vault_unavailable"
    http_status = 503
    retryable = True
    default_message = "saved card lookup failed"


class GatewayUnavailable(CheckoutError):
    code = "gateway_unavailable"
    http_status = 502
    retryable = True
    default_message = "payment gateway unavailable"


class ChargeOutcomeUnknown(GatewayUnavailable):
    """Transport failed mid-charge: the card may or may not have been billed."""

    code = "charge_outcome_unknown"
    http_status = 504
    default_message = "payment gateway did not confirm the charge"


class GatewayKeyConflict(ChargeOutcomeUnknown):
    """Stripe refused the idempotency key: it is in flight or was sent with other parameters."""

    code = "gateway_idempotency_conflict"
    http_status = 409
    default_message = "payment gateway is still processing this charge"


class OrderPersistFailure(CheckoutError):
    code = "order_persist_failure"
    http_status = 500
    retryable = True
    default_message = "order could not be saved"


class StoreUnavailable(CheckoutError):
    code = "store_unavailable"
    http_status = 503
    retryable = True
    default_message = "checkout store unavailable"
