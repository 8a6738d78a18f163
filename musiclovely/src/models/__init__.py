"""
Database models - import all models here so Alembic can discover them.
"""
from src.models.quiz import Quiz
from src.models.order import Order
from src.models.cakto_webhook_log import CaktoWebhookLog
from src.models.email_log import EmailLog

__all__ = [
    "Quiz",
    "Order",
    "CaktoWebhookLog",
    "EmailLog",
]
