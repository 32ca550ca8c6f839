"""
Pixel Canvas - Payment Session Manager
Lifecycle of the payment sessions that pay for placements.

Every status change is a compare-and-set on the session row, and the
placement follows in the same database transaction.
"""
import contextlib
import logging
import uuid
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Union

from sqlalchemy import select, update, cast, String
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pixelcanvas.core.config import settings
from pixelcanvas.core.errors import (
    ConflictError, InvalidStateError, NotFoundError, ValidationError,
    ErrorCategory, PaymentError
)
from pixelcanvas.core.security import generate_nonce
from pixelcanvas.models.models import (
    PaymentSession, PlacementStatus, SessionStatus,
    ACTIVE_SESSION_STATUSES, TERMINAL_SESSION_STATUSES, placement_status_for
)
from pixelcanvas.services import ledger
from pixelcanvas.services.pricing import get_token, quantize, to_decimal

logger = logging.getLogger(__name__)

# Failures that leave the outcome of a submitted transaction unknown
AMBIGUOUS_CATEGORIES = (
    ErrorCategory.NETWORK_ERROR,
    ErrorCategory.TIMEOUT,
    ErrorCategory.NOT_FOUND,
)


def _attempt_started(now: datetime) -> dict:
    """Stamp an attempt and push the session deadline out from it"""
    return {
        "last_attempt_at": now,
        "expires_at": now + timedelta(seconds=settings.PAYMENT_TIMEOUT_SECONDS),
    }


def _parse_id(session_id: Union[str, uuid.UUID]) -> uuid.UUID:
    if isinstance(session_id, uuid.UUID):
        return session_id
    try:
        return uuid.UUID(str(session_id))
    except ValueError:
        # Not a session id we could ever have issued
        raise NotFoundError(f"Payment session {session_id} not found")


# ============================================================
# LOOKUPS
# ============================================================

async def get(db: AsyncSession, session_id) -> PaymentSession:
    session = await db.get(PaymentSession, _parse_id(session_id), populate_existing=True)
    if not session:
        raise NotFoundError(f"Payment session {session_id} not found")
    return session


async def get_by_signature(db: AsyncSession, signature: str) -> Optional[PaymentSession]:
    result = await db.execute(
        select(PaymentSession).where(PaymentSession.transaction_signature == signature)
    )
    return result.scalar_one_or_none()


async def get_active_for_placement(db: AsyncSession, placement_id: int) -> Optional[PaymentSession]:
    result = await db.execute(
        select(PaymentSession).where(
            PaymentSession.placement_id == placement_id,
            PaymentSession.status.in_(list(ACTIVE_SESSION_STATUSES)),
        )
    )
    return result.scalars().first()


async def find_stale(db: AsyncSession, now: Optional[datetime] = None) -> List[PaymentSession]:
    """Active sessions whose deadline passed with no attempt since"""
    now = now or datetime.utcnow()
    result = await db.execute(
        select(PaymentSession)
        .where(
            PaymentSession.status.in_(list(ACTIVE_SESSION_STATUSES)),
            PaymentSession.expires_at < now,
        )
        .order_by(PaymentSession.expires_at)
    )
    return list(result.scalars().all())


async def _signature_used(db: AsyncSession, signature: str) -> bool:
    """True when any session holds or once held this signature"""
    if await get_by_signature(db, signature):
        return True
    # Base58 has no LIKE wildcards, so a substring match on the JSON text is exact enough
    result = await db.execute(
        select(PaymentSession.id).where(
            cast(PaymentSession.previous_signatures, String).like(f'%"{signature}"%')
        ).limit(1)
    )
    return result.first() is not None


# ============================================================
# TRANSITIONS
# ============================================================

async def _transition(
    db: AsyncSession,
    session: PaymentSession,
    to_status: SessionStatus,
    from_statuses: Iterable[SessionStatus],
    **values
) -> PaymentSession:
    from_statuses = list(from_statuses)
    attempt_count = values.get("attempt_count", session.attempt_count)
    values.update(status=to_status, updated_at=datetime.utcnow())

    try:
        result = await db.execute(
            update(PaymentSession)
            .where(PaymentSession.id == session.id, PaymentSession.status.in_(from_statuses))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateError(
                f"Payment session {session.id} is no longer in "
                f"{', '.join(s.value for s in from_statuses)}"
            )

        await ledger.update_status(
            db, session.placement_id, placement_status_for(to_status, attempt_count), commit=False
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError(f"Payment session {session.id} conflicts with another session")
    except BaseException:
        await db.rollback()
        raise

    await db.refresh(session)
    logger.info(f"Payment session {session.id} -> {to_status.value}")
    return session


async def initialize(
    db: AsyncSession,
    placement_id: int,
    amount,
    token: str,
    sender_wallet: str,
    nonce: Optional[str] = None
) -> PaymentSession:
    """
    Open a payment session for a placement.

    A repeated request carrying the same client nonce returns the session it
    created the first time.
    """
    if not sender_wallet:
        raise ValidationError("sender_wallet is required")
    token_info = get_token(token)
    value = to_decimal(amount)
    if value <= 0:
        raise ValidationError("Amount must be positive")

    if nonce:
        result = await db.execute(select(PaymentSession).where(PaymentSession.nonce == nonce))
        existing = result.scalar_one_or_none()
        if existing:
            if existing.placement_id != placement_id or existing.sender_wallet != sender_wallet:
                raise ConflictError("Nonce already used for a different payment")
            return existing

    placement = await ledger.get(db, placement_id)
    if placement.status == PlacementStatus.CONFIRMED:
        raise InvalidStateError(f"Placement {placement_id} is already paid")
    # A failed payment may be tried again while nobody else took the area
    reclaim = placement.status == PlacementStatus.PAYMENT_FAILED
    if not placement.is_live and not reclaim:
        raise InvalidStateError(f"Placement {placement_id} is no longer reserved ({placement.status.value})")

    if token_info.symbol != placement.token or quantize(value, token_info) != placement.cost:
        raise ValidationError(
            "Amount or token does not match the placement",
            {"expected_amount": str(placement.cost), "expected_token": placement.token}
        )

    if await get_active_for_placement(db, placement_id):
        raise ConflictError(f"Placement {placement_id} already has an active payment session")

    now = datetime.utcnow()
    session = PaymentSession(
        placement_id=placement_id,
        sender_wallet=sender_wallet,
        recipient_wallet=settings.RECIPIENT_WALLET_ADDRESS,
        amount=placement.cost,
        token=token_info.symbol,
        status=SessionStatus.INITIALIZED,
        nonce=nonce or generate_nonce(),
        previous_signatures=[],
        attempt_count=0,
        created_at=now,
        updated_at=now,
        expires_at=now + timedelta(seconds=settings.PAYMENT_TIMEOUT_SECONDS),
    )

    guard = ledger.reservation(db) if reclaim else contextlib.nullcontext()
    try:
        async with guard:
            if reclaim:
                await ledger.reclaim(db, placement_id)
            db.add(session)
            await db.flush()
            if not reclaim:
                await ledger.update_status(db, placement_id, PlacementStatus.INITIALIZED, commit=False)
            await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError(f"Placement {placement_id} already has an active payment session")
    except BaseException:
        await db.rollback()
        raise

    await db.refresh(session)
    logger.info(
        f"Payment session {session.id} initialized for placement {placement_id}: "
        f"{session.amount} {session.token} from {sender_wallet}"
    )
    return session


async def mark_pending(db: AsyncSession, session_id) -> PaymentSession:
    """A transaction attempt is starting"""
    session = await get(db, session_id)
    if session.status == SessionStatus.PENDING:
        for key, value in _attempt_started(datetime.utcnow()).items():
            setattr(session, key, value)
        await db.commit()
        return session
    if session.status != SessionStatus.INITIALIZED:
        raise InvalidStateError(f"Payment session {session.id} is {session.status.value}")

    return await _transition(
        db, session, SessionStatus.PENDING, [SessionStatus.INITIALIZED],
        **_attempt_started(datetime.utcnow())
    )


async def record_submission(
    db: AsyncSession,
    session_id,
    signature: str,
    last_valid_block_height: Optional[int] = None
) -> PaymentSession:
    """
    Attach a submitted transaction's signature and move to PROCESSING.

    last_valid_block_height is the blockhash expiry the transaction was
    signed against; the sweeper gives the signature up only once the chain
    has moved past it.
    """
    if not signature:
        raise ValidationError("signature is required")

    session = await get(db, session_id)
    if session.transaction_signature == signature:
        return session
    if session.transaction_signature:
        raise ConflictError(
            f"Payment session {session.id} already has a different signature",
            {"signature": session.transaction_signature}
        )
    if session.is_terminal:
        raise InvalidStateError(f"Payment session {session.id} is {session.status.value}")
    if signature in (session.previous_signatures or []) or await _signature_used(db, signature):
        raise ConflictError("Signature was already used for a payment")

    try:
        return await _transition(
            db, session, SessionStatus.PROCESSING,
            [SessionStatus.INITIALIZED, SessionStatus.PENDING],
            transaction_signature=signature,
            last_valid_block_height=last_valid_block_height,
            **_attempt_started(datetime.utcnow())
        )
    except InvalidStateError:
        # Lost a race; a concurrent call with the same signature is still a no-op
        session = await get(db, session_id)
        if session.transaction_signature == signature:
            return session
        raise


async def register_failure(db: AsyncSession, session_id, error: PaymentError) -> PaymentSession:
    """
    Apply the retry discipline to a failed attempt.

    USER_REJECTED goes back to PENDING without spending an attempt. With a
    signature attached, an ambiguous failure keeps the session PROCESSING
    for the verifier. A definitive retryable failure goes back to PENDING
    while attempts remain, and anything else ends the session FAILED.
    """
    session = await get(db, session_id)
    if session.is_terminal:
        raise InvalidStateError(f"Payment session {session.id} is {session.status.value}")

    now = datetime.utcnow()
    error_data = error.to_dict()
    signature = session.transaction_signature

    if signature and error.category in AMBIGUOUS_CATEGORIES:
        session.last_error = error_data
        for key, value in _attempt_started(now).items():
            setattr(session, key, value)
        await db.commit()
        logger.warning(f"Payment session {session.id}: outcome of {signature} unknown ({error.category.value})")
        return session

    if error.category == ErrorCategory.USER_REJECTED and not signature:
        if session.status == SessionStatus.PENDING:
            session.last_error = error_data
            await db.commit()
            return session
        return await _transition(
            db, session, SessionStatus.PENDING, [SessionStatus.INITIALIZED],
            last_error=error_data, **_attempt_started(now)
        )

    if error.retryable and session.attempt_count < settings.PAYMENT_MAX_RETRIES:
        values = {
            "attempt_count": session.attempt_count + 1,
            "last_error": error_data,
            **_attempt_started(now),
        }
        if signature:
            values["transaction_signature"] = None
            values["last_valid_block_height"] = None
            values["previous_signatures"] = list(session.previous_signatures or []) + [signature]
        logger.info(f"Payment session {session.id}: retry {session.attempt_count + 1} after {error.category.value}")
        return await _transition(db, session, SessionStatus.PENDING, ACTIVE_SESSION_STATUSES, **values)

    return await finalize(db, session.id, SessionStatus.FAILED, error=error)


async def finalize(
    db: AsyncSession,
    session_id,
    outcome: SessionStatus,
    error: Optional[PaymentError] = None
) -> PaymentSession:
    """Move a session to a terminal status; terminal sessions never move again"""
    if outcome not in TERMINAL_SESSION_STATUSES:
        raise ValidationError(f"{outcome.value} is not a final status")

    session = await get(db, session_id)
    if session.is_terminal:
        raise InvalidStateError(f"Payment session {session.id} is already {session.status.value}")
    if outcome == SessionStatus.CONFIRMED and not session.transaction_signature:
        raise InvalidStateError(f"Payment session {session.id} has no transaction to confirm")
    if outcome == SessionStatus.CANCELED and session.transaction_signature:
        raise InvalidStateError(f"Payment session {session.id} already has a submitted transaction")

    values = {}
    if outcome == SessionStatus.CONFIRMED:
        values["confirmed_at"] = datetime.utcnow()
    if error is not None:
        values["last_error"] = error.to_dict()

    session = await _transition(db, session, outcome, ACTIVE_SESSION_STATUSES, **values)
    if outcome == SessionStatus.CONFIRMED:
        logger.info(f"Payment confirmed for placement {session.placement_id}: {session.transaction_signature}")
    return session


async def cancel(db: AsyncSession, session_id) -> PaymentSession:
    """User cancellation before a transaction was submitted; releases the area"""
    return await finalize(db, session_id, SessionStatus.CANCELED)
