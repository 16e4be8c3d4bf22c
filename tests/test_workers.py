import json
import uuid
import pytest
from datetime import timedelta

from booking_swap.model import Booking, BookingStatus, MatchStatus, SwapMatch, SwapStatus, utcnow
from booking_swap.services.resolution import resolution_engine
from booking_swap.services.targeting import targeting_graph
from booking_swap.workers import bootstrap, expiry_sweep, mint_results


def sqs_record(body):
    return {
        "messageId": str(uuid.uuid4()),
        "receiptHandle": "handle",
        "body": json.dumps(body),
        "attributes": {
            "ApproximateReceiveCount": "1",
            "SentTimestamp": "1700000000000",
            "SenderId": "123456789012",
            "ApproximateFirstReceiveTimestamp": "1700000000000",
        },
        "messageAttributes": {},
        "md5OfBody": "",
        "eventSource": "aws:sqs",
        "eventSourceARN": "arn:aws:sqs:eu-west-1:123456789012:mint-results",
        "awsRegion": "eu-west-1",
    }


@pytest.fixture
def worker_db(monkeypatch, session_factory):
    monkeypatch.setattr(bootstrap, "_ready", True)
    monkeypatch.setattr(mint_results, "SessionLocal", session_factory)
    monkeypatch.setattr(expiry_sweep, "SessionLocal", session_factory)


@pytest.fixture
def pending_match(db, make_swap):
    paris = make_swap(owner_id=1, location="Paris")
    rome = make_swap(owner_id=2, location="Rome")
    edge = targeting_graph.create_target(db, paris.id, rome.id, 1)
    return resolution_engine.accept(db, edge.id, 2).match


def test_mint_succeeded(db, worker_db, lambda_context, pending_match):
    event = {"Records": [sqs_record({"type": "MintSucceeded", "matchId": pending_match.id})]}

    response = mint_results.lambda_handler(event, lambda_context)

    assert response["batchItemFailures"] == []
    db.expire_all()
    assert db.get(SwapMatch, pending_match.id).status == MatchStatus.MINTED
    assert {booking.status for booking in db.query(Booking).all()} == {BookingStatus.MATCHED}


def test_mint_failed_rolls_back(db, worker_db, lambda_context, pending_match):
    event = {"Records": [sqs_record({"type": "MintFailed", "matchId": pending_match.id, "reason": "chain down"})]}

    response = mint_results.lambda_handler(event, lambda_context)

    assert response["batchItemFailures"] == []
    db.expire_all()
    match = db.get(SwapMatch, pending_match.id)
    assert match.status == MatchStatus.ROLLED_BACK
    assert match.failure_reason == "chain down"
    assert {booking.status for booking in db.query(Booking).all()} == {BookingStatus.AVAILABLE}


def test_bad_records_fail_alone(db, worker_db, lambda_context, pending_match):
    good = sqs_record({"type": "MintSucceeded", "matchId": pending_match.id})
    unknown = sqs_record({"type": "MintMaybe", "matchId": pending_match.id})
    missing_id = sqs_record({"type": "MintFailed"})
    event = {"Records": [good, unknown, missing_id]}

    response = mint_results.lambda_handler(event, lambda_context)

    failed = {item["itemIdentifier"] for item in response["batchItemFailures"]}
    assert failed == {unknown["messageId"], missing_id["messageId"]}
    db.expire_all()
    assert db.get(SwapMatch, pending_match.id).status == MatchStatus.MINTED


def test_duplicate_delivery_is_harmless(db, worker_db, lambda_context, pending_match):
    body = {"type": "MintSucceeded", "matchId": pending_match.id}
    event = {"Records": [sqs_record(body), sqs_record(body)]}

    response = mint_results.lambda_handler(event, lambda_context)

    assert response["batchItemFailures"] == []
    db.expire_all()
    assert db.get(SwapMatch, pending_match.id).status == MatchStatus.MINTED


def test_late_success_after_rollback_is_dropped(db, worker_db, lambda_context, pending_match):
    resolution_engine.rollback(db, pending_match.id, "timed out")
    event = {"Records": [sqs_record({"type": "MintSucceeded", "matchId": pending_match.id})]}

    response = mint_results.lambda_handler(event, lambda_context)

    assert response["batchItemFailures"] == []
    db.expire_all()
    assert db.get(SwapMatch, pending_match.id).status == MatchStatus.ROLLED_BACK


def test_expiry_sweep_handler(db, worker_db, lambda_context, make_swap):
    stale = make_swap(owner_id=1)
    fresh = make_swap(owner_id=2, location="Rome")
    stale.expires_at = utcnow() - timedelta(hours=1)
    db.commit()

    response = expiry_sweep.lambda_handler({"source": "aws.events"}, lambda_context)

    assert response == {"expired": 1}
    db.expire_all()
    assert stale.status == SwapStatus.EXPIRED
    assert fresh.status == SwapStatus.ACTIVE
