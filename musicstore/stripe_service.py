"""Stripe adapter for the checkout workflow.

The API key is held by the instance and sent with each request, so nothing
touches the module-level ``stripe.api_key`` and tests can hand the
orchestrator any object with the same three methods.
"""
import logging

import stripe

from musicstore.config import STRIPE_SECRET_KEY
from musicstore.errors import (
    ChargeDeclined,
    ChargeOutcomeUnknown,
    GatewayKeyConflict,
    GatewayRejectedToken,
    GatewayUnavailable,
    ValidationError,
)

logger = logging.getLogger(__name__)

# InvalidRequestError codes meaning the customer or its card is gone
SOURCE_GONE_CODES = ("missing", "resource_missing")


def _message(exc: stripe.StripeError) -> str:
    return exc.user_message or str(exc)


class StripeGateway:
    def __init__(self, api_key: str = None):
        self.api_key = api_key or STRIPE_SECRET_KEY

    def create_customer_from_token(self, token: str) -> str:
        """Attach a single-use card token to a new Stripe customer."""
        try:
            customer = stripe.Customer.create(source=token, api_key=self.api_key)
        except (stripe.CardError, stripe.InvalidRequestError) as exc:
            raise GatewayRejectedToken(_message(exc)) from exc
        except stripe.StripeError as exc:
            logger.warning("stripe customer creation failed: %s", exc)
            raise GatewayUnavailable(_message(exc)) from exc
        return customer.id

    def charge(self, amount: int, currency: str, description: str, reference: str,
               idempotency_key: str = None, metadata: dict = None) -> str:
        params = dict(
            amount=amount,
            currency=currency,
            description=description,
            customer=reference,
            metadata=metadata or {},
            api_key=self.api_key,
        )
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            charge = stripe.Charge.create(**params)
        except stripe.CardError as exc:
            raise ChargeDeclined(_message(exc), reason=exc.code) from exc
        except stripe.IdempotencyError as exc:
            logger.error("stripe rejected idempotency key %s: %s", idempotency_key, exc)
            raise GatewayKeyConflict(_message(exc)) from exc
        except stripe.InvalidRequestError as exc:
            if exc.code in SOURCE_GONE_CODES:
                # the vaulted customer has no usable source anymore
                raise ChargeDeclined(_message(exc), reason=exc.code) from exc
            if exc.param in ("amount", "currency"):
                raise ValidationError(_message(exc)) from exc
            logger.error("stripe rejected charge request (key=%s): %s", idempotency_key, exc)
            raise GatewayUnavailable(_message(exc)) from exc
        except (stripe.APIConnectionError, stripe.APIError) as exc:
            # Stripe may have billed the card before the connection dropped
            logger.error("stripe charge outcome unknown (key=%s): %s", idempotency_key, exc)
            raise ChargeOutcomeUnknown(_message(exc)) from exc
        except stripe.StripeError as exc:
            raise GatewayUnavailable(_message(exc)) from exc

        if charge.status == "failed":
            raise ChargeDeclined(charge.failure_message, reason=charge.failure_code)
        return charge.id

    def find_charge(self, intent_id: str):
        """Return the id of a succeeded charge tagged with ``intent_id``, if any."""
        try:
            result = stripe.Charge.search(
                query=f"metadata['intent_id']:'{intent_id}'",
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            raise GatewayUnavailable(_message(exc)) from exc
        for charge in result.data:
            if charge.status == "succeeded":
                return charge.id
        return None
