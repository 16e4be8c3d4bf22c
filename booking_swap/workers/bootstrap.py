from aws_lambda_powertools import Logger

from booking_swap.config import settings
from booking_swap.events import event_dispatcher
from booking_swap.services.ledger import ledger_publisher
from booking_swap.services.notification import notification_service, register_notification_handlers

logger = Logger(service=settings.POWERTOOLS_SERVICE_NAME)

_ready = False


def ensure_publishers():
    """Wire SNS/SQS publishers once per cold start"""
    global _ready
    if _ready:
        return
    notification_service.initialize()
    ledger_publisher.initialize()
    register_notification_handlers(event_dispatcher, notification_service)
    _ready = True
    logger.info("Publishers initialised for worker")
