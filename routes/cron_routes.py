from flask import Blueprint, current_app, jsonify, request
from concurrent.futures import TimeoutError
from datetime import datetime
import logging
import os

logger = logging.getLogger(__name__)

cron_bp = Blueprint('cron', __name__)

CHECK_TIMEOUT_SECONDS = 60


@cron_bp.route('/cron/check', methods=['GET', 'POST'])
def bill_check():
    """
    Endpoint to trigger a bill check
    Called by an external scheduler in addition to the bot's own timer
    """
    # Optional: Add authentication via API key
    api_key = request.headers.get('Authorization')
    expected_key = os.getenv('CRON_API_KEY')

    if expected_key and api_key != f"Bearer {expected_key}":
        return jsonify({"error": "Unauthorized"}), 401

    try:
        logger.info("🔔 Bill check cron job triggered")

        services = current_app.config["SERVICES"]
        future = services.submit(services.ingestion.scheduled_check())
        try:
            result = future.result(timeout=CHECK_TIMEOUT_SECONDS)
        except TimeoutError:
            return jsonify({
                "success": True,
                "message": "Bill check still running"
            }), 202

        return jsonify({
            "success": True,
            "message": "Bill check finished",
            **result
        }), 200

    except RuntimeError as e:
        logger.error(f"❌ Bill check unavailable: {e}")
        return jsonify({
            "success": False,
            "error": str(e)
        }), 503
    except Exception as e:
        logger.exception("❌ Error in bill check cron")
        return jsonify({
            "success": False,
            "error": str(e)
        }), 500


@cron_bp.route('/cron/test', methods=['GET'])
def test_cron():
    """Test endpoint to verify cron setup"""
    return jsonify({
        "success": True,
        "message": "Cron endpoint is working",
        "timestamp": datetime.now().isoformat()
    }), 200
