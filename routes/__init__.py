"""
Routes module for BeanTalk HTTP hooks
"""

from .webhook_routes import webhook_bp
from .status_routes import status_bp
from .cron_routes import cron_bp

__all__ = ['webhook_bp', 'status_bp', 'cron_bp']
