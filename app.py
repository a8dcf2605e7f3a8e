from flask import Flask
from dotenv import load_dotenv
import logging
import os
import threading

from routes import webhook_bp, status_bp, cron_bp

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(services) -> Flask:
    """Build the Flask app around already wired services"""
    app = Flask(__name__)
    app.config["SERVICES"] = services

    # Register blueprints
    app.register_blueprint(webhook_bp)
    app.register_blueprint(status_bp)
    app.register_blueprint(cron_bp)
    return app


def start_bot():
    """Start the Telegram bot in a background thread and return it"""
    from bot import TelegramBot

    bot = TelegramBot()
    thread = threading.Thread(target=bot.run_sync, name="telegram-bot", daemon=True)
    thread.start()
    return bot


if __name__ == '__main__':
    port = int(os.getenv('PORT', 8080))

    bot = start_bot()
    app = create_app(bot.services)

    logger.info(f"\n{'='*50}")
    logger.info("🚀 BeanTalk API")
    logger.info(f"{'='*50}")
    logger.info(f"📍 Port: {port}")
    logger.info("📥 Webhooks:   /webhook/email")
    logger.info("⏰ Cron Jobs:  /cron/check, /cron/test")
    logger.info("📊 Status:     /health, /queue, /categories/lookup")
    logger.info(f"{'='*50}\n")

    # Run Flask app
    app.run(host='0.0.0.0', port=port, debug=False)
