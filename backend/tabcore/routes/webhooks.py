# Overview: Flask route receiving payment gateway webhooks and mapping them onto the payment orchestrator.

"""
Stripe Webhook Endpoint

WHY: Checkout completes (or expires) outside our request cycle. Stripe calls
back here, at least once per event.

EVENTS:
- checkout.session.completed -> payment_service.confirm_success
- checkout.session.expired   -> payment_service.cancel_pending
- anything else is acknowledged and ignored

SECURITY:
- Stripe-Signature is verified against STRIPE_WEBHOOK_SECRET before the
  payload is trusted.
"""

import stripe
from flask import Blueprint, request, jsonify, current_app

from ..errors import DomainError
from ..services import payment_service


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")


EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_CHECKOUT_EXPIRED = "checkout.session.expired"


@webhooks_bp.post("/stripe")
def stripe_webhook_route():
    """
    Receive a Stripe event.

    Returns:
        200: Event processed (or ignored)
        400: Missing/invalid signature or payload
        409: Payment cannot transition (e.g. completed after refund)
        500: Server error
    """
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        current_app.logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not set")
        return jsonify({"error": "Webhook secret not configured"}), 500

    payload = request.get_data(as_text=True)
    signature = request.headers.get("Stripe-Signature")
    if not signature:
        return jsonify({"error": "Missing Stripe-Signature header"}), 400

    try:
        event = stripe.Webhook.construct_event(payload, signature, secret)
    except ValueError:
        current_app.logger.warning("Stripe webhook with invalid payload")
        return jsonify({"error": "Invalid payload"}), 400
    except stripe.SignatureVerificationError:
        current_app.logger.warning("Stripe webhook with invalid signature")
        return jsonify({"error": "Invalid signature"}), 400

    event_type = event["type"]
    try:
        if event_type == EVENT_CHECKOUT_COMPLETED:
            session_id = event["data"]["object"]["id"]
            payment = payment_service.confirm_success(session_id)
        elif event_type == EVENT_CHECKOUT_EXPIRED:
            session_id = event["data"]["object"]["id"]
            payment = payment_service.cancel_pending(session_id)
        else:
            current_app.logger.info("Ignoring Stripe event %s", event_type)
            return jsonify({"received": True, "handled": False}), 200

    except DomainError as e:
        current_app.logger.warning("Stripe event %s rejected: %s", event_type, e.message)
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to process Stripe event %s", event_type)
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({
        "received": True,
        "handled": True,
        "payment": payment.to_dict() if payment is not None else None,
    }), 200
