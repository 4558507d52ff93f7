# Overview: Payment gateway port and its Stripe Checkout adapter.

"""
The payment orchestrator talks to the outside world only through
PaymentGateway. The active instance lives in app.extensions["payment_gateway"]
so tests (and other deployments) can swap it without touching services.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import stripe
from flask import current_app

from ..errors import GatewayError


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str | None


class PaymentGateway(Protocol):
    def create_checkout_session(
        self,
        amount_cents: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        payment_id: int,
    ) -> CheckoutSession:
        ...

    def refund(self, session_id: str, amount_cents: int) -> None:
        ...


class StripeGateway:
    """
    Stripe Checkout adapter.

    Uses the per-call api_key parameter rather than the module-level stripe.api_key,
    so several apps (or tests) in one process never share credentials.
    """

    def __init__(self, secret_key: str):
        self.secret_key = secret_key

    def _require_key(self) -> str:
        if not self.secret_key:
            raise GatewayError("Stripe is not configured")
        return self.secret_key

    def create_checkout_session(self, amount_cents, currency, success_url, cancel_url, payment_id):
        api_key = self._require_key()
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                line_items=[{
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": amount_cents,
                        "product_data": {"name": f"Order payment #{payment_id}"},
                    },
                    "quantity": 1,
                }],
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=str(payment_id),
                metadata={"payment_id": str(payment_id)},
                api_key=api_key,
            )
        except stripe.StripeError as e:
            current_app.logger.error("Stripe checkout session creation failed: %s", e)
            raise GatewayError("Payment gateway error", details={"gateway_message": str(e)}) from e

        return CheckoutSession(session_id=session.id, url=session.url)

    def refund(self, session_id, amount_cents):
        """Refund through the payment intent behind a completed checkout session."""
        api_key = self._require_key()
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=api_key)
            payment_intent = session.payment_intent
            if not payment_intent:
                raise GatewayError("Checkout session has no payment intent", details={"session_id": session_id})
            if not isinstance(payment_intent, str):
                payment_intent = payment_intent.id

            stripe.Refund.create(payment_intent=payment_intent, amount=amount_cents, api_key=api_key)
        except stripe.StripeError as e:
            current_app.logger.error("Stripe refund failed for session %s: %s", session_id, e)
            raise GatewayError("Payment gateway error", details={"gateway_message": str(e)}) from e


def get_gateway() -> PaymentGateway:
    gateway = current_app.extensions.get("payment_gateway")
    if gateway is None:
        raise GatewayError("No payment gateway configured")
    return gateway
