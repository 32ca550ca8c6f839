import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from pixelcanvas.core.errors import (
    ConflictError, ErrorCategory, InvalidStateError, NotFoundError, ValidationError, payment_error
)
from pixelcanvas.models.models import PlacementStatus, SessionStatus, placement_status_for
from pixelcanvas.services import ledger, payment_sessions
from pixelcanvas.services.reservation import check_area


SENDER = "sender-wallet"


@pytest.fixture
def open_session(db, make_placement):
    async def open_(x=0, y=0, nonce=None):
        placement = await make_placement(x, y)
        session = await payment_sessions.initialize(db, placement.id, "0.01", "SOL", SENDER, nonce=nonce)
        return placement.id, session

    return open_


async def placement_status(db, placement_id):
    return (await ledger.get(db, placement_id)).status


# ============================================================
# INITIALIZE
# ============================================================

async def test_initialize(db, open_session, recipient):
    placement_id, session = await open_session()

    assert session.status == SessionStatus.INITIALIZED
    assert session.amount == Decimal("0.01")
    assert session.token == "SOL"
    assert session.recipient_wallet == recipient
    assert session.transaction_signature is None
    assert session.expires_at > session.created_at
    assert await placement_status(db, placement_id) == PlacementStatus.INITIALIZED


async def test_initialize_same_nonce_returns_existing(db, make_placement):
    placement = await make_placement()
    first = await payment_sessions.initialize(db, placement.id, "0.01", "SOL", SENDER, nonce="nonce-1")
    again = await payment_sessions.initialize(db, placement.id, "0.01", "SOL", SENDER, nonce="nonce-1")
    assert again.id == first.id


async def test_nonce_reused_for_other_wallet(db, make_placement):
    placement = await make_placement()
    await payment_sessions.initialize(db, placement.id, "0.01", "SOL", SENDER, nonce="nonce-1")
    with pytest.raises(ConflictError):
        await payment_sessions.initialize(db, placement.id, "0.01", "SOL", "someone-else", nonce="nonce-1")


async def test_initialize_rejects_wrong_amount_or_token(db, make_placement):
    placement = await make_placement()
    with pytest.raises(ValidationError):
        await payment_sessions.initialize(db, placement.id, "0.009", "SOL", SENDER)
    with pytest.raises(ValidationError):
        await payment_sessions.initialize(db, placement.id, "0.01", "USDC", SENDER)
    with pytest.raises(ValidationError):
        await payment_sessions.initialize(db, placement.id, "0", "SOL", SENDER)


async def test_one_active_session_per_placement(db, make_placement):
    placement = await make_placement()
    await payment_sessions.initialize(db, placement.id, "0.01", "SOL", SENDER)
    with pytest.raises(ConflictError):
        await payment_sessions.initialize(db, placement.id, "0.01", "SOL", SENDER)


async def test_initialize_on_released_placement(db, make_placement):
    placement = await make_placement()
    await ledger.update_status(db, placement.id, PlacementStatus.NOT_INITIATED)
    with pytest.raises(InvalidStateError):
        await payment_sessions.initialize(db, placement.id, "0.01", "SOL", SENDER)


async def fail_payment(db, session):
    await payment_sessions.mark_pending(db, session.id)
    await payment_sessions.register_failure(
        db, session.id, payment_error(ErrorCategory.INSUFFICIENT_FUNDS, "empty wallet")
    )


async def test_failed_payment_can_be_tried_again(db, open_session):
    placement_id, first = await open_session()
    await fail_payment(db, first)
    assert await placement_status(db, placement_id) == PlacementStatus.PAYMENT_FAILED
    assert (await check_area(db, 0, 0, 100, 100)).available

    second = await payment_sessions.initialize(db, placement_id, "0.01", "SOL", SENDER)

    assert second.id != first.id
    assert second.status == SessionStatus.INITIALIZED
    assert await placement_status(db, placement_id) == PlacementStatus.INITIALIZED
    assert not (await check_area(db, 0, 0, 100, 100)).available


async def test_failed_payment_area_taken_meanwhile(db, open_session, make_placement):
    placement_id, first = await open_session()
    await fail_payment(db, first)
    other = await make_placement(50, 50)

    with pytest.raises(ConflictError) as exc:
        await payment_sessions.initialize(db, placement_id, "0.01", "SOL", SENDER)

    assert exc.value.details["conflicting_ids"] == [other.id]
    assert await placement_status(db, placement_id) == PlacementStatus.PAYMENT_FAILED
    assert await payment_sessions.get_active_for_placement(db, placement_id) is None


async def test_unknown_session(db):
    with pytest.raises(NotFoundError):
        await payment_sessions.get(db, "not-a-uuid")
    with pytest.raises(NotFoundError):
        await payment_sessions.get(db, "00000000-0000-0000-0000-000000000000")


# ============================================================
# SUBMISSIONS
# ============================================================

async def test_record_submission(db, open_session):
    placement_id, session = await open_session()

    session = await payment_sessions.record_submission(db, session.id, "sig-1")
    assert session.status == SessionStatus.PROCESSING
    assert session.transaction_signature == "sig-1"
    assert await placement_status(db, placement_id) == PlacementStatus.PROCESSING

    # Same signature again is a no-op
    again = await payment_sessions.record_submission(db, session.id, "sig-1")
    assert again.status == SessionStatus.PROCESSING

    with pytest.raises(ConflictError):
        await payment_sessions.record_submission(db, session.id, "sig-2")


async def test_signature_never_shared(db, open_session):
    _, first = await open_session(0, 0)
    _, second = await open_session(200, 200)

    await payment_sessions.record_submission(db, first.id, "sig-shared")
    with pytest.raises(ConflictError):
        await payment_sessions.record_submission(db, second.id, "sig-shared")


# ============================================================
# RETRY DISCIPLINE
# ============================================================

async def test_user_rejection_does_not_spend_attempt(db, open_session):
    placement_id, session = await open_session()
    await payment_sessions.mark_pending(db, session.id)

    session = await payment_sessions.register_failure(
        db, session.id, payment_error(ErrorCategory.USER_REJECTED, "declined")
    )
    assert session.status == SessionStatus.PENDING
    assert session.attempt_count == 0
    assert session.last_error["category"] == "USER_REJECTED"


async def test_retryable_failures_until_exhausted(db, open_session):
    placement_id, session = await open_session()
    await payment_sessions.mark_pending(db, session.id)
    network = payment_error(ErrorCategory.NETWORK_ERROR, "connection reset")

    session = await payment_sessions.register_failure(db, session.id, network)
    assert session.status == SessionStatus.PENDING
    assert session.attempt_count == 1
    assert await placement_status(db, placement_id) == PlacementStatus.PAYMENT_RETRY

    session = await payment_sessions.register_failure(db, session.id, network)
    assert session.attempt_count == 2

    session = await payment_sessions.register_failure(db, session.id, network)
    assert session.status == SessionStatus.FAILED
    assert await placement_status(db, placement_id) == PlacementStatus.PAYMENT_FAILED
    assert (await check_area(db, 0, 0, 100, 100)).available


async def test_non_retryable_failure_ends_session(db, open_session):
    placement_id, session = await open_session()
    await payment_sessions.mark_pending(db, session.id)

    session = await payment_sessions.register_failure(
        db, session.id, payment_error(ErrorCategory.INSUFFICIENT_FUNDS, "empty wallet")
    )
    assert session.status == SessionStatus.FAILED
    assert await placement_status(db, placement_id) == PlacementStatus.PAYMENT_FAILED


async def test_unknown_outcome_keeps_session_processing(db, open_session):
    placement_id, session = await open_session()
    await payment_sessions.record_submission(db, session.id, "sig-1")

    session = await payment_sessions.register_failure(
        db, session.id, payment_error(ErrorCategory.TIMEOUT, "not confirmed in time")
    )
    assert session.status == SessionStatus.PROCESSING
    assert session.transaction_signature == "sig-1"
    assert session.last_error["category"] == "TIMEOUT"
    assert await placement_status(db, placement_id) == PlacementStatus.PROCESSING


async def test_expired_transaction_retried_with_new_signature(db, open_session):
    _, session = await open_session()
    await payment_sessions.record_submission(db, session.id, "sig-1")

    session = await payment_sessions.register_failure(db, session.id, payment_error(
        ErrorCategory.BLOCKCHAIN_ERROR, "expired", retryable=True, code="BLOCKHASH_EXPIRED"
    ))
    assert session.status == SessionStatus.PENDING
    assert session.transaction_signature is None
    assert session.previous_signatures == ["sig-1"]

    with pytest.raises(ConflictError):
        await payment_sessions.record_submission(db, session.id, "sig-1")

    session = await payment_sessions.record_submission(db, session.id, "sig-2")
    assert session.status == SessionStatus.PROCESSING


# ============================================================
# FINALIZE
# ============================================================

async def test_confirm_requires_signature(db, open_session):
    _, session = await open_session()
    with pytest.raises(InvalidStateError):
        await payment_sessions.finalize(db, session.id, SessionStatus.CONFIRMED)


async def test_finalize_once(db, open_session):
    placement_id, session = await open_session()
    await payment_sessions.record_submission(db, session.id, "sig-1")

    session = await payment_sessions.finalize(db, session.id, SessionStatus.CONFIRMED)
    assert session.status == SessionStatus.CONFIRMED
    assert session.confirmed_at is not None
    assert await placement_status(db, placement_id) == PlacementStatus.CONFIRMED

    with pytest.raises(InvalidStateError):
        await payment_sessions.finalize(db, session.id, SessionStatus.FAILED)
    with pytest.raises(InvalidStateError):
        await payment_sessions.register_failure(
            db, session.id, payment_error(ErrorCategory.NETWORK_ERROR, "late")
        )

    session = await payment_sessions.get(db, session.id)
    assert session.status == SessionStatus.CONFIRMED


async def test_concurrent_finalize_has_one_winner(db, session_maker, open_session):
    placement_id, session = await open_session()
    await payment_sessions.record_submission(db, session.id, "sig-1")

    async def settle(outcome):
        async with session_maker() as other:
            return await payment_sessions.finalize(other, session.id, outcome)

    results = await asyncio.gather(
        settle(SessionStatus.CONFIRMED), settle(SessionStatus.FAILED), return_exceptions=True
    )

    winners = [r for r in results if not isinstance(r, BaseException)]
    losers = [r for r in results if isinstance(r, InvalidStateError)]
    assert len(winners) == 1
    assert len(losers) == 1

    final = await payment_sessions.get(db, session.id)
    assert final.status == winners[0].status
    assert await placement_status(db, placement_id) == placement_status_for(final.status)


async def test_finalize_needs_final_status(db, open_session):
    _, session = await open_session()
    with pytest.raises(ValidationError):
        await payment_sessions.finalize(db, session.id, SessionStatus.PENDING)


async def test_cancel_releases_area(db, open_session):
    placement_id, session = await open_session()

    session = await payment_sessions.cancel(db, session.id)
    assert session.status == SessionStatus.CANCELED
    assert await placement_status(db, placement_id) == PlacementStatus.NOT_INITIATED
    assert (await check_area(db, 0, 0, 100, 100)).available


async def test_cancel_after_submission_refused(db, open_session):
    _, session = await open_session()
    await payment_sessions.record_submission(db, session.id, "sig-1")
    with pytest.raises(InvalidStateError):
        await payment_sessions.cancel(db, session.id)


async def test_find_stale(db, open_session):
    _, session = await open_session()
    assert session.expires_at == session.created_at + timedelta(minutes=3)

    assert await payment_sessions.find_stale(db, datetime.utcnow()) == []
    stale = await payment_sessions.find_stale(db, datetime.utcnow() + timedelta(minutes=4))
    assert [s.id for s in stale] == [session.id]
