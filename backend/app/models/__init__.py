"""Convenience imports for Alembic metadata discovery."""

from app.models.user import User
from app.models.product import Product
from app.models.notification import Notification
from app.models.notification_dedup import NotificationDeduplication
from app.models.health_check_run import HealthCheckRun  # noqa: F401
