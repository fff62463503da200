from flask import Blueprint, jsonify, request

from subsync.registry import get_services

webhook_bp = Blueprint("stripe_webhook", __name__)


@webhook_bp.route("/api/stripe-webhook", methods=["POST"])
def stripe_webhook():
    """
    Stripe webhook endpoint.

    401 on a bad signature, 400 on a malformed event. Any authenticated,
    well-formed event is acknowledged with 200 even if applying it failed.
    """
    result = get_services().reconciler.reconcile(
        request.get_data(),
        request.headers.get("Stripe-Signature"),
    )
    return jsonify(result.to_dict()), 200
