from flask import Blueprint, current_app, request, jsonify
import hashlib
import logging
import os
from functools import wraps

from transaction.models import Email

logger = logging.getLogger(__name__)

webhook_bp = Blueprint('webhook', __name__, url_prefix='/webhook')


def verify_webhook_api_key(f):
    """Decorator to verify the forwarder's API Key, if one is configured"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected_key = os.getenv("WEBHOOK_API_KEY")
        if not expected_key:
            return f(*args, **kwargs)

        auth_header = request.headers.get('Authorization')

        if not auth_header:
            return jsonify({"error": "Missing Authorization header"}), 401

        if not auth_header.startswith('Apikey '):
            return jsonify({"error": "Invalid Authorization format"}), 401

        api_key = auth_header.replace('Apikey ', '').strip()

        if api_key != expected_key:
            return jsonify({"error": "Invalid API Key"}), 403

        return f(*args, **kwargs)

    return decorated_function


def email_id_for(data: dict) -> str:
    """Forwarders that don't send a message id get one derived from the content"""
    if data.get("id"):
        return str(data["id"])
    digest = hashlib.sha256()
    for key in ("from", "subject", "date", "body"):
        digest.update(str(data.get(key, "")).encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()[:16]


@webhook_bp.route('/email', methods=['POST'])
@verify_webhook_api_key
def receive_email():
    """
    Email webhook endpoint
    Receives a bank alert email from n8n and queues it for the next bill check
    """
    try:
        data = request.get_json(silent=True)

        if not data:
            return jsonify({"error": "No data provided"}), 400

        body = data.get("body", "")
        if not body:
            return jsonify({"error": "Email body required"}), 400

        email = Email(
            id=email_id_for(data),
            subject=data.get("subject", ""),
            sender=data.get("from", ""),
            body=body,
            to=data.get("to", ""),
            date=data.get("date"),
        )

        logger.info(f"📥 Email received from {email.sender}: {email.subject} ({len(body)} chars)")

        services = current_app.config["SERVICES"]
        added = services.inbox.add(email)
        if not added:
            logger.info(f"Email {email.id} already received, skipping")

        scan_started = False
        if added:
            try:
                services.submit(services.ingestion.scheduled_check())
                scan_started = True
            except RuntimeError as e:
                logger.warning(f"⚠️ Email stored, bill check deferred: {e}")

        return jsonify({
            "success": True,
            "email_id": email.id,
            "duplicate": not added,
            "scan_started": scan_started
        }), 202

    except Exception as e:
        logger.exception("❌ Error receiving email")
        return jsonify({"success": False, "error": str(e)}), 500
