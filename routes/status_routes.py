from flask import Blueprint, current_app, request, jsonify
import logging

logger = logging.getLogger(__name__)

status_bp = Blueprint('status', __name__)


@status_bp.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    services = current_app.config.get("SERVICES")
    loop = services.loop if services else None
    return jsonify({
        "status": "healthy",
        "service": "BeanTalk",
        "version": "1.0",
        "bot_running": bool(loop and loop.is_running())
    }), 200


@status_bp.route('/queue', methods=['GET'])
def queue_status():
    """Categorization queue and inbox status"""
    try:
        services = current_app.config["SERVICES"]
        status = services.call(services.coordinator.status)
        status["unread_emails"] = services.inbox.unread_count()
        status["pending_bills"] = len(services.ingestion.pending_bills)
        return jsonify(status), 200
    except Exception as e:
        logger.exception("❌ Error reading queue status")
        return jsonify({"error": str(e)}), 500


@status_bp.route('/categories/lookup', methods=['GET'])
def lookup_category():
    """Look up the category mapped to a merchant"""
    merchant = request.args.get('merchant', '').strip()
    if not merchant:
        return jsonify({"error": "merchant parameter required"}), 400

    try:
        services = current_app.config["SERVICES"]
        category = services.call(services.store.find_category, merchant)
        return jsonify({
            "merchant": merchant,
            "category": category,
            "found": category is not None
        }), 200
    except Exception as e:
        logger.exception("❌ Error looking up category")
        return jsonify({"error": str(e)}), 500
