"""
Pixel Canvas - Payment Flow
Drives a payment session through the transaction driver and verifier.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pixelcanvas.core.errors import ErrorCategory, PaymentError
from pixelcanvas.models.models import PaymentSession, SessionStatus
from pixelcanvas.services import payment_sessions
from pixelcanvas.services.tx_driver import (
    DriverResult, PreparedTransaction, Signer, TransactionDriver, tx_driver
)
from pixelcanvas.services.verifier import TransactionVerifier, VerificationResult, verifier as default_verifier

logger = logging.getLogger(__name__)


@dataclass
class PaymentOutcome:
    session: PaymentSession
    result: Optional[DriverResult] = None
    verification: Optional[VerificationResult] = None

    @property
    def success(self) -> bool:
        return self.session.status == SessionStatus.CONFIRMED

    @property
    def error(self) -> Optional[PaymentError]:
        if self.success:
            return None
        if self.verification and self.verification.error:
            return self.verification.error
        if self.result and self.result.error:
            return self.result.error
        # Settled earlier, by another request or the sweeper
        if self.session.last_error:
            return PaymentError.from_dict(self.session.last_error)
        return None

    def to_dict(self) -> dict:
        error = self.error
        return {
            "success": self.success,
            "session": self.session.to_dict(),
            "signature": self.session.transaction_signature,
            "error": error.to_dict() if error else None,
            "verification": self.verification.to_dict() if self.verification else None,
        }


class PaymentFlow:
    """
    Runs attempts for one session until it confirms, fails for good, or
    needs the user again. Retries always start from fresh chain state.
    """

    def __init__(self, driver: Optional[TransactionDriver] = None, verifier: Optional[TransactionVerifier] = None):
        self.driver = driver or tx_driver
        self.verifier = verifier or default_verifier

    async def _settle(self, db: AsyncSession, session_id, result: DriverResult) -> PaymentOutcome:
        """Record what the driver reported and decide what comes next"""
        if result.success:
            verification = await self.verifier.verify_session(db, session_id)
            session = await payment_sessions.get(db, session_id)
            return PaymentOutcome(session=session, result=result, verification=verification)

        session = await payment_sessions.register_failure(db, session_id, result.error)
        return PaymentOutcome(session=session, result=result)

    async def pay(self, db: AsyncSession, session_id, signer: Signer) -> PaymentOutcome:
        """Execute a session's transfer with a signer held by this process"""
        session = await payment_sessions.mark_pending(db, session_id)

        async def on_signed(signature: str, last_valid_block_height: Optional[int] = None):
            await payment_sessions.record_submission(db, session.id, signature, last_valid_block_height)

        while True:
            result = await self.driver.execute(
                session.amount,
                session.token,
                session.sender_wallet,
                signer,
                recipient=session.recipient_wallet,
                reference=str(session.id),
                on_signed=on_signed,
            )
            outcome = await self._settle(db, session.id, result)
            session = outcome.session

            retry = (
                not result.success
                and session.status == SessionStatus.PENDING
                and result.error.category != ErrorCategory.USER_REJECTED
            )
            if not retry:
                if not outcome.success:
                    logger.info(f"Payment session {session.id} stopped in {session.status.value}")
                return outcome

            logger.info(f"Retrying payment session {session.id} (attempt {session.attempt_count + 1})")

    async def prepare(self, db: AsyncSession, session_id) -> tuple[PaymentSession, Optional[PreparedTransaction], Optional[PaymentError]]:
        """Unsigned transaction for a browser wallet to sign"""
        session = await payment_sessions.mark_pending(db, session_id)
        prepared, error = await self.driver.prepare(
            session.amount,
            session.token,
            session.sender_wallet,
            recipient=session.recipient_wallet,
            reference=str(session.id),
        )
        if error:
            session = await payment_sessions.register_failure(db, session.id, error)
        return session, prepared, error

    async def submit(
        self,
        db: AsyncSession,
        session_id,
        signed_tx: str,
        last_valid_block_height: Optional[int] = None
    ) -> PaymentOutcome:
        """Relay a transaction the user's wallet signed"""
        session = await payment_sessions.get(db, session_id)

        async def on_signed(signature: str, last_valid_block_height: Optional[int] = None):
            await payment_sessions.record_submission(db, session.id, signature, last_valid_block_height)

        result = await self.driver.submit_signed(
            signed_tx, last_valid_block_height=last_valid_block_height, on_signed=on_signed
        )
        return await self._settle(db, session.id, result)


payment_flow = PaymentFlow()
