from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.utilities.typing import LambdaContext

from booking_swap.config import settings
from booking_swap.db import SessionLocal
from booking_swap.services.swaps import expire_swaps

logger = Logger(service=settings.POWERTOOLS_SERVICE_NAME)
tracer = Tracer()


@tracer.capture_lambda_handler
@logger.inject_lambda_context
def lambda_handler(event: dict, context: LambdaContext) -> dict:
    """Scheduled sweep: expire swaps past their expiry and cancel their proposals"""
    db = SessionLocal()
    try:
        expired = expire_swaps(db)
    finally:
        db.close()

    logger.info(f"Expiry sweep finished, {expired} swaps expired")
    return {"expired": expired}
