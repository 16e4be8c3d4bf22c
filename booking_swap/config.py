from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application configuration"""

    # Database
    DATABASE_URL: str = "sqlite:///./bookingswap.db"

    # Logging
    POWERTOOLS_SERVICE_NAME: str = "booking-swap"

    # AWS
    AWS_REGION: Optional[str] = "eu-west-1"
    AWS_PROFILE: Optional[str] = None

    # SNS topic receiving TargetCreated / MatchCreated / ProposalRejected
    NOTIFICATION_TOPIC_ARN: Optional[str] = None

    # SQS queue consumed by the ledger mint worker
    MINT_QUEUE_URL: Optional[str] = None

    # Bounded wait for swap locks before ConcurrentModification
    LOCK_TIMEOUT_SECONDS: float = 5.0

    # Targeting history pagination
    HISTORY_PAGE_SIZE: int = 50
    HISTORY_MAX_PAGE_SIZE: int = 200

    class Config:
        env_file = ".env"


settings = Settings()
