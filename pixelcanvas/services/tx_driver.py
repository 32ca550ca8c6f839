"""
Pixel Canvas - Transaction Driver
Builds, signs, submits and confirms one payment transfer on Solana.

Every attempt checks the payer's balance and fetches a fresh blockhash.
Failures come back as a typed PaymentError, never as a raised exception.
"""
import asyncio
import base64
import logging
import secrets
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, Tuple, Union

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from spl.memo.constants import MEMO_PROGRAM_ID
from spl.memo.instructions import create_memo
from spl.memo.models import MemoParams
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address, transfer_checked
from spl.token.models import TransferCheckedParams

from pixelcanvas.core.config import settings
from pixelcanvas.core.errors import ErrorCategory, PaymentError, payment_error
from pixelcanvas.services.pricing import TokenInfo, from_base_units, get_token, to_base_units
from pixelcanvas.services.rpc_manager import RPCManager, RPCError, rpc_manager

logger = logging.getLogger(__name__)

Signer = Callable[[Transaction], Awaitable[Transaction]]


class SignerRejectedError(Exception):
    """The wallet owner declined to sign"""


REJECTION_MARKERS = ("user rejected", "rejected", "declined", "cancelled", "canceled", "denied")


def is_user_rejection(exc: BaseException) -> bool:
    if isinstance(exc, SignerRejectedError):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in REJECTION_MARKERS)


class KeypairSigner:
    """Signer backed by a local keypair (server-held wallets, tests)"""

    def __init__(self, keypair: Keypair):
        self.keypair = keypair

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    async def __call__(self, tx: Transaction) -> Transaction:
        tx.sign([self.keypair], tx.message.recent_blockhash)
        return tx


# ============================================================
# RESULTS
# ============================================================

@dataclass
class DriverResult:
    success: bool
    signature: Optional[str] = None
    error: Optional[PaymentError] = None
    # Signature recovered from an earlier submission of the same transaction
    reused: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "signature": self.signature,
            "error": self.error.to_dict() if self.error else None,
            "reused": self.reused,
        }


@dataclass
class PreparedTransaction:
    """An unsigned transfer waiting for a wallet signature"""
    transaction: str  # base64 unsigned transaction
    blockhash: str
    last_valid_block_height: int
    amount_base_units: int
    token: str

    def to_dict(self) -> dict:
        return {
            "transaction": self.transaction,
            "blockhash": self.blockhash,
            "last_valid_block_height": self.last_valid_block_height,
            "amount_base_units": self.amount_base_units,
            "token": self.token,
        }


def _pubkey(value: Union[str, Pubkey]) -> Pubkey:
    return value if isinstance(value, Pubkey) else Pubkey.from_string(str(value))


def _network_error(message: str, error: RPCError) -> PaymentError:
    return payment_error(ErrorCategory.NETWORK_ERROR, f"{message}: {error}", retryable=True)


# ============================================================
# TRANSACTION DRIVER
# ============================================================

class TransactionDriver:
    """Drives one transfer from balance check to confirmation"""

    def __init__(
        self,
        rpc: Optional[RPCManager] = None,
        network: Optional[str] = None,
        confirmation_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        signer_timeout: Optional[float] = None,
    ):
        self.rpc = rpc or rpc_manager
        self.network = network or settings.SOLANA_NETWORK
        self.confirmation_timeout = (
            settings.CONFIRMATION_TIMEOUT_SECONDS if confirmation_timeout is None else confirmation_timeout
        )
        self.poll_interval = settings.CONFIRMATION_POLL_INTERVAL if poll_interval is None else poll_interval
        self.signer_timeout = settings.SIGNER_TIMEOUT_SECONDS if signer_timeout is None else signer_timeout

    # ============================================================
    # BUILDING
    # ============================================================

    def build_instructions(
        self,
        token: TokenInfo,
        payer: Pubkey,
        recipient: Pubkey,
        units: int,
        reference: Optional[str] = None
    ) -> List[Instruction]:
        if token.is_native:
            instructions = [transfer(TransferParams(from_pubkey=payer, to_pubkey=recipient, lamports=units))]
        else:
            mint = Pubkey.from_string(token.mint_for(self.network))
            instructions = [transfer_checked(TransferCheckedParams(
                program_id=TOKEN_PROGRAM_ID,
                source=get_associated_token_address(payer, mint),
                mint=mint,
                dest=get_associated_token_address(recipient, mint),
                owner=payer,
                amount=units,
                decimals=token.decimals,
            ))]

        # Memo makes each attempt a distinct transaction
        memo = f"pixelcanvas:{reference or '-'}:{secrets.token_hex(4)}"
        instructions.append(create_memo(MemoParams(
            program_id=MEMO_PROGRAM_ID,
            signer=payer,
            message=memo.encode(),
        )))
        return instructions

    async def check_balance(self, payer: Pubkey, token: TokenInfo, units: int) -> Optional[PaymentError]:
        """INSUFFICIENT_FUNDS or NETWORK_ERROR, None when the payer can cover units"""
        if token.is_native:
            balance, error = await self.rpc.get_balance(str(payer))
        else:
            mint = Pubkey.from_string(token.mint_for(self.network))
            account = get_associated_token_address(payer, mint)
            balance, error = await self.rpc.get_token_account_balance(str(account))

        if error:
            return _network_error("Failed to check balance", error)
        if balance < units:
            return payment_error(
                ErrorCategory.INSUFFICIENT_FUNDS,
                f"Insufficient {token.symbol} balance: have {from_base_units(balance, token)}, "
                f"need {from_base_units(units, token)}",
                payload={"balance": balance, "required": units},
            )
        return None

    async def _build(
        self,
        amount: Union[Decimal, str],
        token: Union[str, TokenInfo],
        payer,
        recipient=None,
        reference: Optional[str] = None
    ) -> Tuple[Optional[Tuple[Transaction, dict, int, TokenInfo]], Optional[PaymentError]]:
        token = token if isinstance(token, TokenInfo) else get_token(token)
        try:
            payer_key = _pubkey(payer)
            recipient_key = _pubkey(recipient or settings.RECIPIENT_WALLET_ADDRESS)
        except ValueError as e:
            return None, payment_error(ErrorCategory.WALLET_ERROR, f"Invalid wallet address: {e}", retryable=False)

        units = to_base_units(amount, token)
        if units <= 0:
            return None, payment_error(ErrorCategory.WALLET_ERROR, "Amount rounds to zero", retryable=False)

        balance_error = await self.check_balance(payer_key, token, units)
        if balance_error:
            return None, balance_error

        blockhash, error = await self.rpc.get_latest_blockhash()
        if error:
            return None, _network_error("Failed to get recent blockhash", error)

        message = Message.new_with_blockhash(
            self.build_instructions(token, payer_key, recipient_key, units, reference),
            payer_key,
            Hash.from_string(blockhash["blockhash"]),
        )
        return (Transaction.new_unsigned(message), blockhash, units, token), None

    async def prepare(
        self,
        amount,
        token,
        payer,
        recipient=None,
        reference: Optional[str] = None
    ) -> Tuple[Optional[PreparedTransaction], Optional[PaymentError]]:
        """Unsigned transaction for a wallet that signs outside this process"""
        built, error = await self._build(amount, token, payer, recipient, reference)
        if error:
            return None, error
        tx, blockhash, units, token_info = built
        return PreparedTransaction(
            transaction=base64.b64encode(bytes(tx)).decode(),
            blockhash=blockhash["blockhash"],
            last_valid_block_height=blockhash["lastValidBlockHeight"],
            amount_base_units=units,
            token=token_info.symbol,
        ), None

    # ============================================================
    # EXECUTION
    # ============================================================

    async def execute(
        self,
        amount,
        token,
        payer,
        signer: Signer,
        recipient=None,
        reference: Optional[str] = None,
        on_signed: Optional[Callable[[str, Optional[int]], Awaitable[None]]] = None
    ) -> DriverResult:
        """
        Run one full attempt: balance, blockhash, sign, send, confirm.
        on_signed receives the signature and its blockhash expiry before the
        transaction is broadcast.
        """
        built, error = await self._build(amount, token, payer, recipient, reference)
        if error:
            return DriverResult(success=False, error=error)
        tx, blockhash, units, token_info = built

        try:
            signed = await asyncio.wait_for(signer(tx), timeout=self.signer_timeout)
        except asyncio.TimeoutError:
            return DriverResult(success=False, error=payment_error(
                ErrorCategory.TIMEOUT, "Wallet did not sign in time", retryable=True
            ))
        except Exception as e:
            if is_user_rejection(e):
                logger.info(f"Transaction declined by wallet owner ({reference})")
                return DriverResult(success=False, error=payment_error(
                    ErrorCategory.USER_REJECTED, "Transaction was declined by user"
                ))
            logger.warning(f"Signer failed ({reference}): {e}")
            return DriverResult(success=False, error=payment_error(
                ErrorCategory.WALLET_ERROR, f"Failed to sign transaction: {e}", retryable=True
            ))

        logger.info(f"Sending {units} base units of {token_info.symbol} ({reference})")
        return await self.submit_signed(
            signed, last_valid_block_height=blockhash["lastValidBlockHeight"], on_signed=on_signed
        )

    async def submit_signed(
        self,
        signed: Union[Transaction, str],
        last_valid_block_height: Optional[int] = None,
        on_signed: Optional[Callable[[str, Optional[int]], Awaitable[None]]] = None
    ) -> DriverResult:
        """Send a signed transaction and wait for it to confirm"""
        if isinstance(signed, str):
            try:
                signed = Transaction.from_bytes(base64.b64decode(signed))
            except Exception as e:
                return DriverResult(success=False, error=payment_error(
                    ErrorCategory.WALLET_ERROR, f"Invalid signed transaction: {e}", retryable=False
                ))

        if not signed.signatures or signed.signatures[0] == Signature.default():
            return DriverResult(success=False, error=payment_error(
                ErrorCategory.WALLET_ERROR, "Transaction is not signed", retryable=True
            ))

        signature = str(signed.signatures[0])
        if on_signed:
            await on_signed(signature, last_valid_block_height)

        sent, error = await self.rpc.send_transaction(base64.b64encode(bytes(signed)).decode())

        if error and error.transport:
            # It may have reached a node; only the chain can tell now
            return DriverResult(success=False, signature=signature, error=_network_error(
                "Failed to send transaction", error
            ))

        if error:
            result = await self._send_rejected(signature, error, last_valid_block_height)
            result.signature = signature
            return result

        if sent and sent != signature:
            logger.warning(f"Node returned signature {sent}, expected {signature}")
        return await self.confirm(signature, last_valid_block_height)

    async def _send_rejected(
        self,
        signature: str,
        error: RPCError,
        last_valid_block_height: Optional[int]
    ) -> DriverResult:
        message = error.message.lower()

        if "already been processed" in message or "alreadyprocessed" in message:
            status, status_error = await self.rpc.get_signature_status(signature)
            if not status_error and status and not status.get("err"):
                logger.info(f"Transaction {signature} was already processed, confirming it")
                result = await self.confirm(signature, last_valid_block_height)
                result.reused = True
                return result
            return DriverResult(success=False, error=payment_error(
                ErrorCategory.BLOCKCHAIN_ERROR,
                "Transaction already processed. Please try again with a new transaction.",
                retryable=False,
                code="DUPLICATE_TRANSACTION",
                payload=error.data,
            ))

        if "insufficient funds" in message or "insufficient lamports" in message:
            return DriverResult(success=False, error=payment_error(
                ErrorCategory.INSUFFICIENT_FUNDS, error.message, payload=error.data
            ))

        if "blockhash not found" in message:
            return DriverResult(success=False, error=payment_error(
                ErrorCategory.BLOCKCHAIN_ERROR, error.message, retryable=True, code="BLOCKHASH_NOT_FOUND"
            ))

        return DriverResult(success=False, error=payment_error(
            ErrorCategory.BLOCKCHAIN_ERROR,
            f"Failed to send transaction: {error.message}",
            retryable=True,
            payload=error.data,
        ))

    # ============================================================
    # CONFIRMATION
    # ============================================================

    def _status_result(self, signature: str, status: Optional[dict]) -> Optional[DriverResult]:
        """Final result for a signature status, None while undecided"""
        if not status:
            return None
        if status.get("err"):
            return DriverResult(success=False, signature=signature, error=payment_error(
                ErrorCategory.BLOCKCHAIN_ERROR,
                f"Transaction failed: {status['err']}",
                retryable=False,
                payload=status["err"],
            ))
        if status.get("confirmationStatus") in ("confirmed", "finalized"):
            return DriverResult(success=True, signature=signature)
        return None

    async def confirm(self, signature: str, last_valid_block_height: Optional[int] = None) -> DriverResult:
        """
        Poll until the transaction confirms, fails, or its blockhash expires.
        If polling errors out or runs past the timeout, one last status
        lookup with history search decides before giving up.
        """
        deadline = time.monotonic() + self.confirmation_timeout

        while time.monotonic() < deadline:
            status, error = await self.rpc.get_signature_status(signature)
            if error:
                logger.warning(f"Confirmation polling error for {signature}: {error}")
                break

            result = self._status_result(signature, status)
            if result:
                return result

            if status is None and last_valid_block_height is not None:
                height, height_error = await self.rpc.get_block_height()
                if not height_error and height > last_valid_block_height:
                    # Re-check: it may have landed just before expiry
                    status, error = await self.rpc.get_signature_status(signature)
                    result = None if error else self._status_result(signature, status)
                    if result:
                        return result
                    if not error and status is None:
                        return DriverResult(success=False, signature=signature, error=payment_error(
                            ErrorCategory.BLOCKCHAIN_ERROR,
                            "Transaction expired before it was processed",
                            retryable=True,
                            code="BLOCKHASH_EXPIRED",
                        ))

            await asyncio.sleep(self.poll_interval)

        status, error = await self.rpc.get_signature_status(signature)
        if not error:
            result = self._status_result(signature, status)
            if result:
                return result

        return DriverResult(success=False, signature=signature, error=payment_error(
            ErrorCategory.TIMEOUT,
            f"Transaction {signature} was not confirmed in time",
            retryable=True,
        ))


tx_driver = TransactionDriver()
