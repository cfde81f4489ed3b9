# Import all models here so Alembic can discover them.

from app.models.billing import Customer, Subscription  # noqa: F401
from app.models.webhook_event import WebhookEvent  # noqa: F401
from app.models.entitlement import Entitlement, Skip  # noqa: F401
from app.models.meal_token import MealToken, Redemption  # noqa: F401
from app.models.kiosk_session import KioskSession  # noqa: F401
from app.models.notification import NotificationDelivery  # noqa: F401
from app.models.service_calendar import ServiceException  # noqa: F401
from app.models.audit import AuditLogEntry  # noqa: F401
