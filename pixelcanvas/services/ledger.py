"""
Pixel Canvas - Placement Ledger
Owns placement rows: reserving inserts, status updates and spatial lookups.
"""
import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update, and_, text
from sqlalchemy.ext.asyncio import AsyncSession

from pixelcanvas.core.errors import ConflictError, InvalidStateError, NotFoundError
from pixelcanvas.models.models import (
    Placement, PaymentSession, PlacementStatus,
    LIVE_PLACEMENT_STATUSES, RELEASED_PLACEMENT_STATUSES
)

logger = logging.getLogger(__name__)

# Key for pg_advisory_xact_lock around reserving inserts
RESERVATION_LOCK_KEY = 0x50584C43

# Statuses that count as a payment attempt when entered
ATTEMPT_STATUSES = (PlacementStatus.PENDING, PlacementStatus.PROCESSING)

_reservation_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = weakref.WeakKeyDictionary()


def _reservation_lock() -> asyncio.Lock:
    """Process-wide reservation lock, one per running event loop"""
    loop = asyncio.get_running_loop()
    lock = _reservation_locks.get(loop)
    if lock is None:
        lock = _reservation_locks[loop] = asyncio.Lock()
    return lock


@asynccontextmanager
async def reservation(db: AsyncSession):
    """
    Serialize writes that claim canvas area.

    Hold it from the overlap check until the transaction commits. On
    PostgreSQL an advisory transaction lock extends it across processes.
    """
    async with _reservation_lock():
        if db.get_bind().dialect.name == "postgresql":
            await db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": RESERVATION_LOCK_KEY})
        yield


def _overlap_clause(x: int, y: int, width: int, height: int):
    # Two rectangles overlap unless one lies entirely to one side of the other
    return and_(
        Placement.x < x + width,
        Placement.x + Placement.width > x,
        Placement.y < y + height,
        Placement.y + Placement.height > y,
    )


# ============================================================
# LOOKUPS
# ============================================================

async def get(db: AsyncSession, placement_id: int) -> Placement:
    placement = await db.get(Placement, placement_id, populate_existing=True)
    if not placement:
        raise NotFoundError(f"Placement {placement_id} not found")
    return placement


async def list_live(db: AsyncSession) -> List[Placement]:
    result = await db.execute(
        select(Placement)
        .where(Placement.status.in_(list(LIVE_PLACEMENT_STATUSES)))
        .order_by(Placement.created_at)
    )
    return list(result.scalars().all())


async def find_overlapping(
    db: AsyncSession,
    x: int,
    y: int,
    width: int,
    height: int,
    exclude_id: Optional[int] = None
) -> List[Placement]:
    """Live placements whose rectangle intersects the given one"""
    conditions = [
        Placement.status.in_(list(LIVE_PLACEMENT_STATUSES)),
        _overlap_clause(x, y, width, height),
    ]
    if exclude_id is not None:
        conditions.append(Placement.id != exclude_id)

    result = await db.execute(select(Placement).where(and_(*conditions)).order_by(Placement.id))
    return list(result.scalars().all())


async def find_by_position(db: AsyncSession, x: int, y: int) -> Optional[Placement]:
    """The live placement covering a canvas point, most recent first"""
    result = await db.execute(
        select(Placement)
        .where(
            Placement.status.in_(list(LIVE_PLACEMENT_STATUSES)),
            Placement.x <= x,
            Placement.x + Placement.width > x,
            Placement.y <= y,
            Placement.y + Placement.height > y,
        )
        .order_by(Placement.created_at.desc(), Placement.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_abandoned(db: AsyncSession, cutoff: datetime) -> List[Placement]:
    """PENDING_PAYMENT placements created before cutoff that never got a session"""
    has_session = select(PaymentSession.id).where(PaymentSession.placement_id == Placement.id).exists()
    result = await db.execute(
        select(Placement).where(
            Placement.status == PlacementStatus.PENDING_PAYMENT,
            Placement.created_at < cutoff,
            ~has_session,
        )
    )
    return list(result.scalars().all())


# ============================================================
# WRITES
# ============================================================

async def insert(db: AsyncSession, placement: Placement) -> int:
    """
    Reserve a placement's rectangle.

    The overlap check and the insert run under the reservation lock so two
    requests for intersecting rectangles cannot both succeed.
    """
    try:
        async with reservation(db):
            conflicts = await find_overlapping(db, placement.x, placement.y, placement.width, placement.height)
            if conflicts:
                raise ConflictError(
                    "Area overlaps an existing placement",
                    {"conflicting_ids": [p.id for p in conflicts]}
                )

            if placement.status is None:
                placement.status = PlacementStatus.PENDING_PAYMENT
            db.add(placement)
            await db.commit()
    except BaseException:
        await db.rollback()
        raise

    await db.refresh(placement)
    logger.info(
        f"Placement {placement.id} reserved at ({placement.x}, {placement.y}) "
        f"{placement.width}x{placement.height} for {placement.owner_wallet}"
    )
    return placement.id


async def update_status(
    db: AsyncSession,
    placement_id: int,
    status: PlacementStatus,
    commit: bool = True
) -> Placement:
    """
    Move a placement to a new status.

    CONFIRMED placements never change, and a released rectangle cannot be
    brought back to life. Entering PENDING or PROCESSING counts one payment
    attempt. Pass commit=False to join the caller's transaction.
    """
    placement = await get(db, placement_id)
    current = placement.status

    if current == status:
        return placement
    if current == PlacementStatus.CONFIRMED:
        raise InvalidStateError(f"Placement {placement_id} is already confirmed")
    if current in RELEASED_PLACEMENT_STATUSES and status in LIVE_PLACEMENT_STATUSES:
        raise InvalidStateError(f"Placement {placement_id} was released ({current.value})")

    values = {"status": status, "updated_at": datetime.utcnow()}
    if status in ATTEMPT_STATUSES:
        values["payment_attempts"] = Placement.payment_attempts + 1

    result = await db.execute(
        update(Placement)
        .where(Placement.id == placement_id, Placement.status == current)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(f"Placement {placement_id} changed concurrently")

    if commit:
        await db.commit()
    await db.refresh(placement)

    logger.info(f"Placement {placement_id}: {current.value} -> {status.value}")
    return placement


async def reclaim(db: AsyncSession, placement_id: int) -> Placement:
    """
    Bring a PAYMENT_FAILED placement back to INITIALIZED for a fresh session.

    The caller holds reservation() and commits; the rectangle is only taken
    back when no live placement claimed it in the meantime.
    """
    placement = await get(db, placement_id)
    if placement.status != PlacementStatus.PAYMENT_FAILED:
        raise InvalidStateError(
            f"Placement {placement_id} cannot be reclaimed ({placement.status.value})"
        )

    conflicts = await find_overlapping(
        db, placement.x, placement.y, placement.width, placement.height, exclude_id=placement.id
    )
    if conflicts:
        raise ConflictError(
            "Area was taken by another placement after the payment failed",
            {"conflicting_ids": [p.id for p in conflicts]}
        )

    result = await db.execute(
        update(Placement)
        .where(Placement.id == placement_id, Placement.status == PlacementStatus.PAYMENT_FAILED)
        .values(status=PlacementStatus.INITIALIZED, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(f"Placement {placement_id} changed concurrently")

    await db.refresh(placement)
    logger.info(f"Placement {placement_id} reclaimed after a failed payment")
    return placement


async def release_many(db: AsyncSession, placement_ids: List[int], status: PlacementStatus) -> int:
    """Release non-confirmed placements in bulk, returns how many moved"""
    if not placement_ids:
        return 0
    result = await db.execute(
        update(Placement)
        .where(
            Placement.id.in_(placement_ids),
            Placement.status.in_(list(LIVE_PLACEMENT_STATUSES - {PlacementStatus.CONFIRMED})),
        )
        .values(status=status, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount
