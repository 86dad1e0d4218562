import logging

import stripe

from marketplace.config import STRIPE_SECRET_KEY
from marketplace.errors import PaymentGatewayError

logger = logging.getLogger(__name__)

stripe.api_key = STRIPE_SECRET_KEY


def create_payment_intent(amount: int, currency: str, metadata: dict, idempotency_key: str,
                          description: str = None):
    try:
        return stripe.PaymentIntent.create(
            amount=amount,
            currency=currency,
            automatic_payment_methods={"enabled": True},
            metadata=metadata,
            description=description,
            idempotency_key=idempotency_key,
        )
    except stripe.StripeError as exc:
        logger.error("Stripe refused payment intent for %s: %s", metadata, exc)
        raise PaymentGatewayError("Payment provider could not create the payment") from exc


def retrieve_payment_intent(payment_intent_id: str):
    try:
        return stripe.PaymentIntent.retrieve(payment_intent_id)
    except stripe.StripeError as exc:
        logger.error("Stripe lookup of %s failed: %s", payment_intent_id, exc)
        raise PaymentGatewayError("Payment provider could not verify the payment") from exc
