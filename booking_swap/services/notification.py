import json
import boto3
from botocore.exceptions import BotoCoreError, ClientError
from aws_lambda_powertools import Logger

from booking_swap.config import settings
from booking_swap.events import (
    DomainEvent,
    EventDispatcher,
    MatchCreated,
    MatchRolledBack,
    ProposalRejected,
    TargetCreated,
)

logger = Logger(service=settings.POWERTOOLS_SERVICE_NAME)


SUBJECTS = {
    "TargetCreated": "New swap proposal received",
    "ProposalRejected": "Your swap proposal was declined",
    "MatchCreated": "Swap match confirmed",
    "MatchRolledBack": "Swap match could not be completed",
}


def recipients_for(event: DomainEvent) -> list:
    if isinstance(event, TargetCreated):
        return [event.target_owner_id]
    if isinstance(event, ProposalRejected):
        return [event.proposer_id]
    if isinstance(event, (MatchCreated, MatchRolledBack)):
        return [event.source_owner_id, event.target_owner_id]
    return []


class NotificationService:
    """Fire-and-forget publisher of swap notifications to an SNS topic"""

    def __init__(self):
        self.sns_client = None
        self.topic_arn = None

    def initialize(self, profile_name: str = None, client=None):
        if client is not None:
            self.sns_client = client
        elif profile_name:
            logger.info(f"Initializing SNS with profile: {profile_name}")
            session = boto3.Session(profile_name=profile_name)
            self.sns_client = session.client("sns", region_name=settings.AWS_REGION)
        else:
            self.sns_client = boto3.client("sns", region_name=settings.AWS_REGION)

        self.topic_arn = settings.NOTIFICATION_TOPIC_ARN
        logger.info(f"Notification topic: {self.topic_arn}")

    def publish(self, event: DomainEvent) -> bool:
        """Publish one event; failures are logged and reported as False"""
        if not self.sns_client:
            logger.warning(f"SNS client not initialized, skipping {event.event_type} notification")
            return False

        if not self.topic_arn:
            logger.warning(f"Notification topic not configured, skipping {event.event_type} notification")
            return False

        message = event.to_message()
        message["recipients"] = recipients_for(event)

        try:
            response = self.sns_client.publish(
                TopicArn=self.topic_arn,
                Subject=SUBJECTS.get(event.event_type, "Swap update"),
                Message=json.dumps(message, default=str),
                MessageAttributes={
                    "event_type": {"DataType": "String", "StringValue": event.event_type},
                },
            )
            logger.info(f"Published {event.event_type} notification: {response['MessageId']}")
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error(f"AWS error publishing {event.event_type} notification: {e}")
            return False


notification_service = NotificationService()


def register_notification_handlers(dispatcher: EventDispatcher, service: NotificationService = None):
    service = service or notification_service
    for event_type in (TargetCreated, ProposalRejected, MatchCreated, MatchRolledBack):
        dispatcher.register(event_type, service.publish)
