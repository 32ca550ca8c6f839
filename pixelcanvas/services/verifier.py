"""
Pixel Canvas - Transaction Verifier
Decides from the chain itself whether a payment landed.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pixelcanvas.core.config import settings
from pixelcanvas.core.errors import ErrorCategory, InvalidStateError, PaymentError, payment_error
from pixelcanvas.models.models import SessionStatus
from pixelcanvas.services import payment_sessions
from pixelcanvas.services.pricing import TokenInfo, get_token, to_base_units
from pixelcanvas.services.rpc_manager import RPCManager, rpc_manager

logger = logging.getLogger(__name__)


class VerificationStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    NOT_FOUND = "NOT_FOUND"
    ERROR = "ERROR"  # RPC unavailable, outcome unknown


@dataclass
class VerificationResult:
    confirmed: bool
    status: VerificationStatus
    details: dict = field(default_factory=dict)
    error: Optional[PaymentError] = None

    def to_dict(self) -> dict:
        return {
            "confirmed": self.confirmed,
            "status": self.status.value,
            "details": self.details,
            "error": self.error.to_dict() if self.error else None,
        }


def _account_keys(tx: dict) -> List[str]:
    """Account keys in index order, including v0 lookup-table addresses"""
    keys = []
    for key in tx.get("transaction", {}).get("message", {}).get("accountKeys", []):
        keys.append(key["pubkey"] if isinstance(key, dict) else key)
    loaded = (tx.get("meta") or {}).get("loadedAddresses") or {}
    keys.extend(loaded.get("writable", []))
    keys.extend(loaded.get("readonly", []))
    return keys


def lamports_credited(tx: dict, recipient: str) -> int:
    meta = tx.get("meta") or {}
    pre, post = meta.get("preBalances", []), meta.get("postBalances", [])
    credited = 0
    for index, key in enumerate(_account_keys(tx)):
        if key == recipient and index < len(pre) and index < len(post):
            credited += post[index] - pre[index]
    return credited


def tokens_credited(tx: dict, recipient: str, mint: str) -> int:
    meta = tx.get("meta") or {}

    def owned(balances) -> dict:
        return {
            b["accountIndex"]: int(b["uiTokenAmount"]["amount"])
            for b in balances or []
            if b.get("owner") == recipient and b.get("mint") == mint
        }

    pre, post = owned(meta.get("preTokenBalances")), owned(meta.get("postTokenBalances"))
    return sum(post.get(i, 0) - pre.get(i, 0) for i in set(pre) | set(post))


class TransactionVerifier:
    """Checks a signature against getTransaction, never against client reports"""

    def __init__(self, rpc: Optional[RPCManager] = None, network: Optional[str] = None):
        self.rpc = rpc or rpc_manager
        self.network = network or settings.SOLANA_NETWORK

    def credited(self, tx: dict, recipient: str, token: TokenInfo) -> int:
        if token.is_native:
            return lamports_credited(tx, recipient)
        return tokens_credited(tx, recipient, token.mint_for(self.network))

    async def verify(
        self,
        signature: str,
        expected_recipient: str,
        expected_amount=None,
        token="SOL"
    ) -> VerificationResult:
        token = token if isinstance(token, TokenInfo) else get_token(token)

        tx, error = await self.rpc.get_transaction(signature)
        if error:
            logger.warning(f"Could not fetch transaction {signature}: {error}")
            return VerificationResult(
                confirmed=False,
                status=VerificationStatus.ERROR,
                error=payment_error(ErrorCategory.NETWORK_ERROR, str(error)),
            )

        if not tx:
            return VerificationResult(
                confirmed=False,
                status=VerificationStatus.NOT_FOUND,
                error=payment_error(ErrorCategory.NOT_FOUND, "Transaction not found on blockchain"),
            )

        meta = tx.get("meta") or {}
        details = {
            "signature": signature,
            "slot": tx.get("slot") or 0,
            "block_time": tx.get("blockTime") or 0,
            "fee": meta.get("fee") or 0,
            "err": meta.get("err"),
        }

        if meta.get("err") is not None:
            return self._failed(details, f"Transaction failed on chain: {meta['err']}", payload=meta["err"])

        credited = self.credited(tx, expected_recipient, token)
        details["credited"] = credited
        if credited <= 0:
            return self._failed(details, "Transaction does not pay the recipient")

        if expected_amount is not None:
            expected = to_base_units(expected_amount, token)
            details["expected"] = expected
            if credited < expected:
                return self._failed(details, f"Recipient received {credited} of {expected} base units")

        return VerificationResult(confirmed=True, status=VerificationStatus.CONFIRMED, details=details)

    def _failed(self, details: dict, message: str, payload=None) -> VerificationResult:
        logger.warning(f"Verification failed for {details['signature']}: {message}")
        return VerificationResult(
            confirmed=False,
            status=VerificationStatus.FAILED,
            details=details,
            error=payment_error(ErrorCategory.BLOCKCHAIN_ERROR, message, retryable=False, payload=payload),
        )

    async def verify_session(self, db: AsyncSession, session_id) -> VerificationResult:
        """
        Verify a session's transaction and finalize it.
        Safe to call repeatedly; a confirmed session is reported, not re-finalized.
        """
        session = await payment_sessions.get(db, session_id)

        if session.status == SessionStatus.CONFIRMED:
            return VerificationResult(
                confirmed=True,
                status=VerificationStatus.CONFIRMED,
                details={"signature": session.transaction_signature, "session_status": session.status.value},
            )
        if session.is_terminal:
            return VerificationResult(
                confirmed=False,
                status=VerificationStatus.FAILED,
                details={"signature": session.transaction_signature, "session_status": session.status.value},
            )
        if not session.transaction_signature:
            return VerificationResult(
                confirmed=False,
                status=VerificationStatus.NOT_FOUND,
                details={"session_status": session.status.value},
                error=payment_error(ErrorCategory.NOT_FOUND, "No transaction submitted for this payment"),
            )

        result = await self.verify(
            session.transaction_signature,
            session.recipient_wallet,
            session.amount,
            session.token,
        )

        try:
            if result.status == VerificationStatus.CONFIRMED:
                await payment_sessions.finalize(db, session.id, SessionStatus.CONFIRMED)
            elif result.status == VerificationStatus.FAILED:
                await payment_sessions.finalize(db, session.id, SessionStatus.FAILED, error=result.error)
        except InvalidStateError:
            # Another caller finalized first; report what it decided
            session = await payment_sessions.get(db, session.id)
            result.confirmed = session.status == SessionStatus.CONFIRMED
            result.status = VerificationStatus.CONFIRMED if result.confirmed else VerificationStatus.FAILED

        result.details["session_status"] = (await payment_sessions.get(db, session.id)).status.value
        return result

    async def signature_expired(self, session, now: Optional[datetime] = None) -> Optional[bool]:
        """
        True once a submitted signature can no longer land.

        With a recorded blockhash expiry that means the chain passed it and
        still has no status for the signature. Without one the signature is
        given SIGNATURE_EXPIRY_SECONDS from the last attempt. None when the
        RPC could not tell.
        """
        signature = session.transaction_signature
        if session.last_valid_block_height is None:
            started = session.last_attempt_at or session.created_at
            return (now or datetime.utcnow()) - started > timedelta(seconds=settings.SIGNATURE_EXPIRY_SECONDS)

        height, error = await self.rpc.get_block_height()
        if error:
            logger.warning(f"Could not read block height for {signature}: {error}")
            return None
        if height <= session.last_valid_block_height:
            return False

        status, error = await self.rpc.get_signature_status(signature)
        if error:
            logger.warning(f"Could not read status of {signature}: {error}")
            return None
        return status is None

    async def resolve_submitted(self, db: AsyncSession, session_id, now: Optional[datetime] = None) -> Optional[VerificationResult]:
        """
        Settle a session's submitted transaction before giving up on it.

        Returns the verification when the chain decided the payment, None
        when there is nothing in flight (no signature, or one that expired
        unseen). Raises InvalidStateError while the transaction may still land.
        """
        session = await payment_sessions.get(db, session_id)
        if session.is_terminal or not session.transaction_signature:
            return None

        result = await self.verify_session(db, session.id)
        if result.status in (VerificationStatus.CONFIRMED, VerificationStatus.FAILED):
            return result

        session = await payment_sessions.get(db, session.id)
        if result.status == VerificationStatus.NOT_FOUND and await self.signature_expired(session, now):
            logger.info(f"Transaction {session.transaction_signature} expired without landing")
            return None

        raise InvalidStateError(
            f"Transaction {session.transaction_signature} may still land",
            {"verification": result.to_dict()}
        )


verifier = TransactionVerifier()
