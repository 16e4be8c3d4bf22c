import json
from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.utilities.typing import LambdaContext
from aws_lambda_powertools.utilities.batch import BatchProcessor, EventType, process_partial_response
from aws_lambda_powertools.utilities.data_classes.sqs_event import SQSRecord

from booking_swap.config import settings
from booking_swap.db import SessionLocal
from booking_swap.errors import InvalidTransition
from booking_swap.services.resolution import resolution_engine
from booking_swap.workers.bootstrap import ensure_publishers

logger = Logger(service=settings.POWERTOOLS_SERVICE_NAME)
tracer = Tracer()

processor = BatchProcessor(event_type=EventType.SQS)

MINT_SUCCEEDED = "MintSucceeded"
MINT_FAILED = "MintFailed"


def apply_mint_result(db, payload: dict):
    """Apply one ledger answer to its match; both outcomes are idempotent"""
    result_type = payload.get("type")
    match_id = payload.get("matchId")

    if match_id is None:
        raise ValueError("Missing matchId in message")

    if result_type == MINT_SUCCEEDED:
        return resolution_engine.confirm_mint(db, int(match_id))
    if result_type == MINT_FAILED:
        reason = payload.get("reason") or "ledger mint failed"
        return resolution_engine.rollback(db, int(match_id), reason)

    raise ValueError(f"Unknown mint result type: {result_type}")


@tracer.capture_method
def record_handler(record: SQSRecord):
    """Process a single SQS message"""
    logger.info(f"Processing record: {record.message_id}")

    db = SessionLocal()
    try:
        payload = json.loads(record.body)
        result = apply_mint_result(db, payload)
        logger.info(
            f"Match {payload['matchId']} {payload['type']}: {result.outcome}",
            extra={"match_status": result.match.status if result.match else None},
        )
    except InvalidTransition as e:
        # A late answer for a match that already settled the other way
        logger.error(f"Dropping record {record.message_id}: {e}")
    except Exception as e:
        logger.error(f"Error processing record {record.message_id}: {str(e)}")
        raise
    finally:
        db.close()


@tracer.capture_lambda_handler
@logger.inject_lambda_context
def lambda_handler(event: dict, context: LambdaContext) -> dict:
    """Process ledger mint results in batch"""
    ensure_publishers()
    logger.info(f"Processing {len(event['Records'])} records from SQS")

    return process_partial_response(
        event=event,
        record_handler=record_handler,
        processor=processor,
        context=context
    )
