import logging

from flask import Blueprint, jsonify, url_for

from subsync.errors import AlreadyCompleted
from subsync.registry import get_services
from subsync.routes.utils import json_body, require_fields
from subsync.utils.clock import to_iso

logger = logging.getLogger(__name__)

consent_bp = Blueprint("consent", __name__)


@consent_bp.route("/api/send-verification-email", methods=["POST"])
def send_verification_email():
    data = json_body()
    require_fields(data, "parentEmail", "verificationToken")

    services = get_services()
    record = services.tokens.issue(data["verificationToken"], data["parentEmail"], data.get("childName"))
    message_id = services.verification_mailer.send_verification(
        record.parent_email, record.child_name, record.token
    )

    return jsonify({
        "success": True,
        "messageId": message_id,
        "message": "Verification email sent successfully",
    })


@consent_bp.route("/api/verify-parental-consent", methods=["POST"])
def verify_parental_consent():
    data = json_body()
    require_fields(data, "token")
    token = data["token"]

    try:
        record = get_services().tokens.verify(token)
    except AlreadyCompleted as e:
        payload = e.to_dict()
        payload["redirect"] = url_for("consent.verification_status", token=token)
        return jsonify(payload), e.status_code

    return jsonify({
        "success": True,
        "message": "Parental consent verified successfully",
        "childName": record.child_name,
        "parentEmail": record.parent_email,
    })


@consent_bp.route("/api/verification-status/<token>", methods=["GET"])
def verification_status(token):
    record = get_services().tokens.status(token)
    return jsonify({
        "success": True,
        "isVerified": record.is_verified,
        "childName": record.child_name,
        "parentEmail": record.parent_email,
        "expiresAt": to_iso(record.expires_at),
        "verifiedAt": to_iso(record.verified_at),
    })
