"""
Pixel Canvas - Payment Routes
Payment sessions, wallet transactions and on-chain verification.
"""
from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from pixelcanvas.core.config import settings
from pixelcanvas.core.database import get_db
from pixelcanvas.core.errors import ErrorCategory, ValidationError, payment_error
from pixelcanvas.models.models import SessionStatus
from pixelcanvas.services import payment_sessions
from pixelcanvas.services.payment_flow import PaymentFlow, payment_flow
from pixelcanvas.services.verifier import TransactionVerifier, verifier


router = APIRouter(prefix="/payments", tags=["Payments"])


def get_verifier() -> TransactionVerifier:
    return verifier


def get_payment_flow() -> PaymentFlow:
    return payment_flow


# ============================================================
# SCHEMAS
# ============================================================

class InitializePaymentRequest(BaseModel):
    placement_id: int
    amount: Decimal
    token: str = "SOL"
    sender_wallet: str
    nonce: Optional[str] = None  # client nonce makes retries of this call idempotent


class SubmitTransactionRequest(BaseModel):
    signed_transaction: str  # base64
    last_valid_block_height: Optional[int] = None


class SubmissionRequest(BaseModel):
    signature: str
    last_valid_block_height: Optional[int] = None  # blockhash expiry the transaction was signed with


class FailureRequest(BaseModel):
    category: ErrorCategory
    message: str = ""
    retryable: Optional[bool] = None
    code: Optional[str] = None
    payload: Any = None


class FinalizeRequest(BaseModel):
    outcome: SessionStatus


class VerifyRequest(BaseModel):
    signature: str
    session_id: Optional[str] = None


# ============================================================
# ROUTES
# ============================================================

@router.post("/initialize")
async def initialize_payment(data: InitializePaymentRequest, db: AsyncSession = Depends(get_db)):
    """Open a payment session for a placement"""
    session = await payment_sessions.initialize(
        db,
        placement_id=data.placement_id,
        amount=data.amount,
        token=data.token,
        sender_wallet=data.sender_wallet,
        nonce=data.nonce,
    )
    return {"success": True, "session": session.to_dict()}


@router.post("/verify")
async def verify_transaction(
    data: VerifyRequest,
    db: AsyncSession = Depends(get_db),
    tx_verifier: TransactionVerifier = Depends(get_verifier)
):
    """Check a signature against the chain, settling its session if there is one"""
    session_id = data.session_id
    if not session_id:
        session = await payment_sessions.get_by_signature(db, data.signature)
        session_id = session.id if session else None

    if session_id:
        session = await payment_sessions.get(db, session_id)
        if session.transaction_signature != data.signature:
            raise ValidationError("Signature does not belong to this payment session")
        result = await tx_verifier.verify_session(db, session_id)
    else:
        result = await tx_verifier.verify(data.signature, settings.RECIPIENT_WALLET_ADDRESS)

    return {"success": result.confirmed, **result.to_dict()}


@router.get("/{session_id}")
async def get_payment(session_id: str, db: AsyncSession = Depends(get_db)):
    session = await payment_sessions.get(db, session_id)
    return {"success": True, "session": session.to_dict()}


@router.post("/{session_id}/transaction")
async def build_transaction(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    flow: PaymentFlow = Depends(get_payment_flow)
):
    """Unsigned transfer for the sender's wallet to sign"""
    session, prepared, error = await flow.prepare(db, session_id)
    if error:
        return {"success": False, "error": error.to_dict(), "session": session.to_dict()}
    return {"success": True, "transaction": prepared.to_dict(), "session": session.to_dict()}


@router.post("/{session_id}/submit")
async def submit_transaction(
    session_id: str,
    data: SubmitTransactionRequest,
    db: AsyncSession = Depends(get_db),
    flow: PaymentFlow = Depends(get_payment_flow)
):
    """Relay a signed transaction, wait for it and verify the payment"""
    outcome = await flow.submit(db, session_id, data.signed_transaction, data.last_valid_block_height)
    return outcome.to_dict()


@router.post("/{session_id}/submission")
async def record_submission(session_id: str, data: SubmissionRequest, db: AsyncSession = Depends(get_db)):
    """Attach a signature the client submitted itself"""
    session = await payment_sessions.record_submission(
        db, session_id, data.signature, data.last_valid_block_height
    )
    return {"success": True, "session": session.to_dict()}


@router.post("/{session_id}/failure")
async def report_failure(
    session_id: str,
    data: FailureRequest,
    db: AsyncSession = Depends(get_db),
    tx_verifier: TransactionVerifier = Depends(get_verifier)
):
    """
    Report a failed client-side attempt; the session decides whether to retry.
    A definitive failure never drops a submitted signature the chain may
    still confirm.
    """
    error = payment_error(
        data.category,
        data.message or data.category.value,
        retryable=data.retryable,
        code=data.code,
        payload=data.payload,
    )
    if data.category not in payment_sessions.AMBIGUOUS_CATEGORIES:
        result = await tx_verifier.resolve_submitted(db, session_id)
        if result is not None:
            session = await payment_sessions.get(db, session_id)
            return {
                "success": result.confirmed,
                "session": session.to_dict(),
                "retry_allowed": False,
                "verification": result.to_dict(),
            }

    session = await payment_sessions.register_failure(db, session_id, error)
    return {
        "success": True,
        "session": session.to_dict(),
        "retry_allowed": session.status == SessionStatus.PENDING,
        "user_message": error.user_message(),
    }


@router.post("/{session_id}/finalize")
async def finalize_payment(
    session_id: str,
    data: FinalizeRequest,
    db: AsyncSession = Depends(get_db),
    tx_verifier: TransactionVerifier = Depends(get_verifier)
):
    """
    Close a session. CONFIRMED is only granted by the verifier reading the
    chain, never on the client's word. FAILED or TIMEOUT with a submitted
    transaction is accepted only once the chain rejected it or it expired
    unseen; a transaction that landed confirms the session instead.
    """
    if data.outcome == SessionStatus.CONFIRMED:
        result = await tx_verifier.verify_session(db, session_id)
        session = await payment_sessions.get(db, session_id)
        return {"success": result.confirmed, "session": session.to_dict(), "verification": result.to_dict()}

    if data.outcome in (SessionStatus.FAILED, SessionStatus.TIMEOUT):
        result = await tx_verifier.resolve_submitted(db, session_id)
        if result is not None:
            session = await payment_sessions.get(db, session_id)
            return {"success": result.confirmed, "session": session.to_dict(), "verification": result.to_dict()}

    session = await payment_sessions.finalize(db, session_id, data.outcome)
    return {"success": True, "session": session.to_dict()}


@router.post("/{session_id}/cancel")
async def cancel_payment(session_id: str, db: AsyncSession = Depends(get_db)):
    session = await payment_sessions.cancel(db, session_id)
    return {"success": True, "session": session.to_dict()}
