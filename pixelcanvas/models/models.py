"""
Pixel Canvas - Database Models
Placements on the canvas and the payment sessions that pay for them.
"""
import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, Integer, BigInteger, DateTime, ForeignKey, Text, Numeric, JSON,
    Enum, Index, Uuid, text
)
from sqlalchemy.orm import relationship
import enum

from pixelcanvas.core.database import Base


# ============================================================
# ENUMS
# ============================================================

class PlacementStatus(str, enum.Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    INITIALIZED = "INITIALIZED"
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PAYMENT_RETRY = "PAYMENT_RETRY"
    CONFIRMED = "CONFIRMED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_TIMEOUT = "PAYMENT_TIMEOUT"
    NOT_INITIATED = "NOT_INITIATED"


class SessionStatus(str, enum.Enum):
    INITIALIZED = "INITIALIZED"
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    CANCELED = "CANCELED"


# Statuses that keep a rectangle reserved
LIVE_PLACEMENT_STATUSES = frozenset({
    PlacementStatus.PENDING_PAYMENT,
    PlacementStatus.INITIALIZED,
    PlacementStatus.PENDING,
    PlacementStatus.PROCESSING,
    PlacementStatus.PAYMENT_RETRY,
    PlacementStatus.CONFIRMED,
})

RELEASED_PLACEMENT_STATUSES = frozenset({
    PlacementStatus.PAYMENT_FAILED,
    PlacementStatus.PAYMENT_TIMEOUT,
    PlacementStatus.NOT_INITIATED,
})

ACTIVE_SESSION_STATUSES = frozenset({
    SessionStatus.INITIALIZED,
    SessionStatus.PENDING,
    SessionStatus.PROCESSING,
})

TERMINAL_SESSION_STATUSES = frozenset({
    SessionStatus.CONFIRMED,
    SessionStatus.FAILED,
    SessionStatus.TIMEOUT,
    SessionStatus.CANCELED,
})


def placement_status_for(status: SessionStatus, attempt_count: int = 0) -> PlacementStatus:
    """Placement status mirroring a session status"""
    if status == SessionStatus.PENDING and attempt_count > 0:
        return PlacementStatus.PAYMENT_RETRY
    return {
        SessionStatus.INITIALIZED: PlacementStatus.INITIALIZED,
        SessionStatus.PENDING: PlacementStatus.PENDING,
        SessionStatus.PROCESSING: PlacementStatus.PROCESSING,
        SessionStatus.CONFIRMED: PlacementStatus.CONFIRMED,
        SessionStatus.FAILED: PlacementStatus.PAYMENT_FAILED,
        SessionStatus.TIMEOUT: PlacementStatus.PAYMENT_TIMEOUT,
        SessionStatus.CANCELED: PlacementStatus.NOT_INITIATED,
    }[status]


# ============================================================
# PLACEMENTS
# ============================================================

class Placement(Base):
    __tablename__ = "placements"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Rectangle [x, x + width) x [y, y + height)
    x = Column(Integer, nullable=False)
    y = Column(Integer, nullable=False)
    width = Column(Integer, nullable=False)
    height = Column(Integer, nullable=False)

    image_location = Column(Text, nullable=False)
    status = Column(
        Enum(PlacementStatus, native_enum=False, length=20),
        nullable=False,
        default=PlacementStatus.PENDING_PAYMENT,
        index=True
    )
    owner_wallet = Column(String(44), nullable=False, index=True)

    cost = Column(Numeric(20, 9), nullable=False)
    token = Column(String(10), nullable=False)
    payment_attempts = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    sessions = relationship("PaymentSession", back_populates="placement", lazy="selectin")

    __table_args__ = (
        Index("idx_placements_position", "x", "y"),
    )

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_PLACEMENT_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "image_location": self.image_location,
            "status": self.status.value,
            "owner_wallet": self.owner_wallet,
            "cost": str(self.cost),
            "token": self.token,
            "payment_attempts": self.payment_attempts,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


# ============================================================
# PAYMENT SESSIONS
# ============================================================

class PaymentSession(Base):
    __tablename__ = "payment_sessions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    placement_id = Column(Integer, ForeignKey("placements.id"), nullable=False, index=True)

    sender_wallet = Column(String(44), nullable=False, index=True)
    recipient_wallet = Column(String(44), nullable=False)
    amount = Column(Numeric(20, 9), nullable=False)
    token = Column(String(10), nullable=False)

    status = Column(
        Enum(SessionStatus, native_enum=False, length=20),
        nullable=False,
        default=SessionStatus.INITIALIZED,
        index=True
    )
    nonce = Column(String(64), unique=True, nullable=False)

    # One signature per session, never shared between sessions
    transaction_signature = Column(String(88), unique=True, nullable=True)
    previous_signatures = Column(JSON, default=list)
    # Last block height at which the attached transaction can still land
    last_valid_block_height = Column(BigInteger, nullable=True)

    attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)
    confirmed_at = Column(DateTime, nullable=True)

    # Relationships
    placement = relationship("Placement", back_populates="sessions", lazy="selectin")

    __table_args__ = (
        # At most one active session per placement
        Index(
            "uq_payment_sessions_active_placement",
            "placement_id",
            unique=True,
            postgresql_where=text("status IN ('INITIALIZED', 'PENDING', 'PROCESSING')"),
            sqlite_where=text("status IN ('INITIALIZED', 'PENDING', 'PROCESSING')"),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "placement_id": self.placement_id,
            "sender_wallet": self.sender_wallet,
            "recipient_wallet": self.recipient_wallet,
            "amount": str(self.amount),
            "token": self.token,
            "status": self.status.value,
            "nonce": self.nonce,
            "transaction_signature": self.transaction_signature,
            "last_valid_block_height": self.last_valid_block_height,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
        }
