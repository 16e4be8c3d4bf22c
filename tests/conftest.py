import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "true")

import uuid
import pytest
from fastapi.testclient import TestClient
from datetime import timedelta
from sqlalchemy.orm import sessionmaker

from booking_swap.main import app
from booking_swap.db import build_engine, get_db, init_db
from booking_swap.events import (
    MatchCreated,
    MatchRolledBack,
    ProposalRejected,
    TargetCreated,
    event_dispatcher,
)
from booking_swap.model import Booking, BookingStatus, SwapMode, utcnow
from booking_swap.services.ledger import ledger_publisher
from booking_swap.services.notification import notification_service
from booking_swap.services.swaps import create_swap


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'swaps.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def isolated_publishers():
    """No test talks to AWS unless it wires a client itself"""
    event_dispatcher.clear()
    notification_service.sns_client = None
    notification_service.topic_arn = None
    ledger_publisher.sqs_client = None
    ledger_publisher.queue_url = None
    yield
    event_dispatcher.clear()
    notification_service.sns_client = None
    notification_service.topic_arn = None
    ledger_publisher.sqs_client = None
    ledger_publisher.queue_url = None


@pytest.fixture
def captured_events():
    events = []
    for event_type in (TargetCreated, ProposalRejected, MatchCreated, MatchRolledBack):
        event_dispatcher.register(event_type, events.append)
    return events


@pytest.fixture
def make_booking(db):
    def _make_booking(
        owner_id,
        location="Paris",
        check_in_days=40,
        nights=7,
        price=1000.0,
        accommodation_type="apartment",
        guest_count=2,
        status=BookingStatus.AVAILABLE,
    ):
        check_in = utcnow().replace(microsecond=0) + timedelta(days=check_in_days)
        booking = Booking(
            owner_id=owner_id,
            location=location,
            check_in=check_in,
            check_out=check_in + timedelta(days=nights),
            original_price=price,
            swap_value=price,
            accommodation_type=accommodation_type,
            guest_count=guest_count,
            status=status,
        )
        db.add(booking)
        db.commit()
        return booking
    return _make_booking


@pytest.fixture
def make_swap(db, make_booking):
    def _make_swap(owner_id, location="Paris", mode=SwapMode.ONE_FOR_ONE, expires_in_days=30, **booking_kwargs):
        booking = make_booking(owner_id, location, **booking_kwargs)
        now = utcnow()
        starts = ends = None
        if mode == SwapMode.AUCTION:
            starts = now - timedelta(days=1)
            ends = now + timedelta(days=expires_in_days - 1)
        return create_swap(
            db,
            booking.id,
            mode,
            now + timedelta(days=expires_in_days),
            starts,
            ends,
            requester_id=owner_id,
        )
    return _make_swap


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def override_db(session_factory):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def as_user():
    def _as_user(user_id):
        return {"X-User-Id": str(user_id)}
    return _as_user


@pytest.fixture
def lambda_context():
    class MockContext:
        def __init__(self):
            self.function_name = "test-function"
            self.function_version = "$LATEST"
            self.invoked_function_arn = "arn:aws:lambda:eu-west-1:123456789012:function:test-function"
            self.memory_limit_in_mb = 128
            self.remaining_time_in_millis = lambda: 30000
            self.log_group_name = "/aws/lambda/test-function"
            self.log_stream_name = "2023/01/01/[$LATEST]test"
            self.aws_request_id = str(uuid.uuid4())

    return MockContext()
