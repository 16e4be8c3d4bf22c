import json
import boto3
from botocore.exceptions import BotoCoreError, ClientError
from aws_lambda_powertools import Logger

from booking_swap.config import settings
from booking_swap.events import MatchCreated

logger = Logger(service=settings.POWERTOOLS_SERVICE_NAME)


class LedgerMintPublisher:
    """
    Queues mint requests for the ledger worker.

    The worker answers asynchronously with MintSucceeded / MintFailed
    messages keyed by match id, so a request may be delivered more than once.
    """

    def __init__(self):
        self.sqs_client = None
        self.queue_url = None

    def initialize(self, profile_name: str = None, client=None):
        if client is not None:
            self.sqs_client = client
        elif profile_name:
            session = boto3.Session(profile_name=profile_name)
            self.sqs_client = session.client("sqs", region_name=settings.AWS_REGION)
        else:
            self.sqs_client = boto3.client("sqs", region_name=settings.AWS_REGION)

        self.queue_url = settings.MINT_QUEUE_URL
        logger.info(f"Mint queue: {self.queue_url}")

    @property
    def configured(self) -> bool:
        return bool(self.sqs_client and self.queue_url)

    def request_mint(self, event: MatchCreated) -> bool:
        """
        Returns False only when a configured queue rejected the request.
        An unconfigured publisher skips silently so local runs keep working.
        """
        if not self.configured:
            logger.warning(f"Mint queue not configured, match {event.match_id} left pending")
            return True

        try:
            response = self.sqs_client.send_message(
                QueueUrl=self.queue_url,
                MessageBody=json.dumps(event.to_message(), default=str),
                MessageAttributes={
                    "match_id": {"DataType": "Number", "StringValue": str(event.match_id)},
                },
            )
            logger.info(f"Queued mint for match {event.match_id}: {response['MessageId']}")
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to queue mint for match {event.match_id}: {e}")
            return False


ledger_publisher = LedgerMintPublisher()
