"""
Pixel Canvas - Placement Routes
Reserve canvas areas, look them up and hold short-lived area locks.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from pixelcanvas.core.config import settings
from pixelcanvas.core.database import get_db
from pixelcanvas.core.errors import ConflictError, ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from pixelcanvas.core.security import clean_text, rate_limit
from pixelcanvas.models.models import Placement, PlacementStatus
from pixelcanvas.services import ledger, payment_sessions
from pixelcanvas.services.pricing import calculate_cost, get_token
from pixelcanvas.services.redis_service import redis_service
from pixelcanvas.services.reservation import check_area, size_problem, validate_area


router = APIRouter(prefix="/placements", tags=["Placements"])


# ============================================================
# SCHEMAS
# ============================================================

class CreatePlacementRequest(BaseModel):
    x: int
    y: int
    width: int
    height: int
    image_location: str  # URI of the already stored image
    owner_wallet: str
    token: Optional[str] = None  # defaults to the active payment token
    lock_id: Optional[str] = None


class CancelPlacementRequest(BaseModel):
    owner_wallet: str


class LockAreaRequest(BaseModel):
    x: int
    y: int
    width: int
    height: int
    owner_wallet: str


# ============================================================
# ROUTES
# ============================================================

@router.post("")
async def create_placement(data: CreatePlacementRequest, db: AsyncSession = Depends(get_db)):
    """Reserve an area; the placement waits in PENDING_PAYMENT"""
    owner = clean_text(data.owner_wallet, 44)
    image_location = clean_text(data.image_location, 2048)
    if not owner or not image_location:
        raise ValidationError("owner_wallet and image_location are required")

    check = await check_area(db, data.x, data.y, data.width, data.height)
    if not check.available:
        if check.conflicting_ids:
            raise ConflictError(check.reason, {"conflicting_ids": check.conflicting_ids})
        raise ValidationError(check.reason)

    locked = await redis_service.overlapping_locks(data.x, data.y, data.width, data.height, owner=owner)
    if locked:
        raise ConflictError("Area is locked by another wallet")

    token = get_token(data.token or settings.ACTIVE_PAYMENT_TOKEN)
    placement = Placement(
        x=data.x,
        y=data.y,
        width=data.width,
        height=data.height,
        image_location=image_location,
        owner_wallet=owner,
        status=PlacementStatus.PENDING_PAYMENT,
        cost=calculate_cost(data.width, data.height, token),
        token=token.symbol,
        payment_attempts=0,
    )
    await ledger.insert(db, placement)

    if data.lock_id:
        await redis_service.release_lock(data.lock_id, owner=owner)

    return {"success": True, "placement": placement.to_dict()}


@router.get("")
async def list_placements(db: AsyncSession = Depends(get_db)):
    """All placements currently holding canvas space"""
    placements = await ledger.list_live(db)
    return {"success": True, "placements": [p.to_dict() for p in placements]}


@router.get("/availability")
async def area_availability(
    x: int,
    y: int,
    width: int,
    height: int,
    owner_wallet: Optional[str] = None,
    db: AsyncSession = Depends(get_db)
):
    """Whether an area could be reserved right now"""
    check = await check_area(db, x, y, width, height)
    result = check.to_dict()

    if check.available:
        locks = await redis_service.overlapping_locks(x, y, width, height, owner=owner_wallet)
        if locks:
            result["available"] = False
            result["reason"] = "Area is locked by another wallet"
            result["locked_until"] = max(lock.expires_at for lock in locks)

    if result["available"]:
        token = get_token(settings.ACTIVE_PAYMENT_TOKEN)
        result["cost"] = str(calculate_cost(width, height, token))
        result["token"] = token.symbol

    return {"success": True, **result}


@router.get("/at")
async def placement_at(x: int, y: int, db: AsyncSession = Depends(get_db)):
    """The placement covering a canvas point"""
    placement = await ledger.find_by_position(db, x, y)
    if not placement:
        raise NotFoundError(f"No placement at ({x}, {y})")
    return {"success": True, "placement": placement.to_dict()}


@router.get("/{placement_id}")
async def get_placement(placement_id: int, db: AsyncSession = Depends(get_db)):
    placement = await ledger.get(db, placement_id)
    return {"success": True, "placement": placement.to_dict()}


@router.post("/{placement_id}/cancel")
async def cancel_placement(
    placement_id: int,
    data: CancelPlacementRequest,
    db: AsyncSession = Depends(get_db)
):
    """Give the area back before any payment was submitted"""
    placement = await ledger.get(db, placement_id)
    if placement.owner_wallet != data.owner_wallet:
        raise ForbiddenError("Wallet does not own this placement")

    session = await payment_sessions.get_active_for_placement(db, placement_id)
    if session:
        await payment_sessions.cancel(db, session.id)
    elif placement.status == PlacementStatus.PENDING_PAYMENT:
        await ledger.update_status(db, placement_id, PlacementStatus.NOT_INITIATED)
    else:
        raise InvalidStateError(f"Placement {placement_id} cannot be canceled ({placement.status.value})")

    placement = await ledger.get(db, placement_id)
    return {"success": True, "placement": placement.to_dict()}


# ============================================================
# AREA LOCKS
# ============================================================

@router.post("/locks", dependencies=[Depends(rate_limit(settings.RATE_LIMIT_LOCKS, 60, scope="locks"))])
async def lock_area(data: LockAreaRequest, db: AsyncSession = Depends(get_db)):
    """Hold an area for AREA_LOCK_SECONDS while the owner uploads"""
    validate_area(data.x, data.y, data.width, data.height)
    problem = size_problem(data.width, data.height)
    if problem:
        raise ValidationError(problem)

    check = await check_area(db, data.x, data.y, data.width, data.height)
    if not check.available:
        raise ConflictError(check.reason, {"conflicting_ids": check.conflicting_ids})

    lock = await redis_service.lock_area(data.x, data.y, data.width, data.height, owner=data.owner_wallet)
    if not lock:
        raise ConflictError("Area is locked by another wallet")

    return {"success": True, "lock": lock.to_dict()}


@router.delete("/locks/{lock_id}")
async def release_area_lock(lock_id: str, owner_wallet: Optional[str] = None):
    released = await redis_service.release_lock(lock_id, owner=owner_wallet)
    if not released:
        raise NotFoundError(f"Lock {lock_id} not found")
    return {"success": True}
