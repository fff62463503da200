import logging

from flask import Blueprint, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from subsync.extensions import db
from subsync.registry import get_services
from subsync.routes.utils import as_bool, json_body, require_fields

logger = logging.getLogger(__name__)

billing_bp = Blueprint("billing", __name__)


@billing_bp.route("/api/current-subscription", methods=["GET"])
def current_subscription():
    """Active mirror record for the user, or ``null``."""
    user_id = request.headers.get("User-Id") or request.args.get("userId")
    if not user_id:
        logger.info("No user ID provided, returning no subscription")
        return jsonify(None)

    record = get_services().subscriptions.current_subscription(user_id)
    return jsonify(record.to_dict() if record else None)


@billing_bp.route("/api/create-payment-intent", methods=["POST"])
def create_payment_intent():
    data = json_body()
    require_fields(data, "amount")

    intent = get_services().subscriptions.create_payment_intent(
        data["amount"],
        currency=data.get("currency", "usd"),
        plan_type=data.get("plan_type"),
        billing_cycle=data.get("billing_cycle"),
        is_therapy_referral=as_bool(data.get("is_therapy_referral", False)),
        user_email=data.get("user_email"),
    )
    return jsonify(intent)


@billing_bp.route("/api/create-subscription", methods=["POST"])
def create_subscription():
    data = json_body()
    require_fields(data, "user_id", "user_email", "plan_type", "billing_cycle")

    record = get_services().subscriptions.create_subscription(
        user_id=data["user_id"],
        user_email=data["user_email"],
        plan_type=data["plan_type"],
        billing_cycle=data["billing_cycle"],
        is_therapy_referral=as_bool(data.get("is_therapy_referral", False)),
        payment_intent_id=data.get("payment_intent_id"),
        price_id=data.get("price_id"),
        promotion_code=data.get("promotion_code"),
        user_name=data.get("user_name"),
    )
    return jsonify(record.to_dict())


@billing_bp.route("/api/modify-subscription", methods=["POST"])
def modify_subscription():
    data = json_body()
    require_fields(data, "user_id", "plan_type", "billing_cycle")

    subscription = get_services().subscriptions.modify_subscription(
        user_id=data["user_id"],
        plan_type=data["plan_type"],
        billing_cycle=data["billing_cycle"],
        user_email=data.get("user_email"),
        price_id=data.get("price_id"),
    )
    return jsonify({"success": True, "subscription": subscription})


@billing_bp.route("/api/cancel-subscription", methods=["POST"])
def cancel_subscription():
    data = json_body()
    require_fields(data, "subscription_id")

    subscription = get_services().subscriptions.cancel_subscription(
        data["subscription_id"],
        at_period_end=as_bool(data.get("at_period_end", False)),
    )
    return jsonify({"success": True, "subscription": subscription})


@billing_bp.route("/api/users/<user_id>/anonymize-ledger", methods=["POST"])
def anonymize_ledger(user_id):
    """Account deletion hook. Ledger failures never fail the deletion."""
    try:
        count = get_services().ledger.anonymize(user_id)
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Ledger anonymization failed", exc_info=True, extra={"user_id": user_id})
        return jsonify({
            "success": True,
            "userId": user_id,
            "anonymized": 0,
            "warning": "Financial records could not be anonymized and will be retried",
        })

    return jsonify({"success": True, "userId": user_id, "anonymized": count})
