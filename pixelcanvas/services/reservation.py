"""
Pixel Canvas - Area Reservation Checker
Validates a requested rectangle and reports whether it is free.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pixelcanvas.core.config import settings
from pixelcanvas.core.errors import ValidationError
from pixelcanvas.services import ledger


@dataclass
class AreaCheck:
    available: bool
    conflicting_ids: List[int] = field(default_factory=list)
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "available": self.available,
            "conflicting_ids": self.conflicting_ids,
            "reason": self.reason,
        }


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_area(x, y, width, height):
    """Raise ValidationError for coordinates the canvas can never accept"""
    for name, value in (("x", x), ("y", y), ("width", width), ("height", height)):
        if not _is_int(value):
            raise ValidationError(f"{name} must be an integer", {"field": name})

    if x < 0 or y < 0:
        raise ValidationError("Coordinates must be non-negative", {"x": x, "y": y})

    grid = settings.GRID_SIZE
    if x % grid or y % grid:
        raise ValidationError(f"Coordinates must align to the {grid}px grid", {"x": x, "y": y})

    if x + width > settings.CANVAS_WIDTH or y + height > settings.CANVAS_HEIGHT:
        raise ValidationError(
            "Area extends beyond the canvas",
            {"canvas": [settings.CANVAS_WIDTH, settings.CANVAS_HEIGHT]}
        )


def size_problem(width: int, height: int) -> Optional[str]:
    if width <= 0 or height <= 0:
        return "Width and height must be positive"
    if width > settings.CANVAS_WIDTH // 2 or height > settings.CANVAS_HEIGHT // 2:
        return "Placement cannot exceed half the canvas in either dimension"
    return None


async def check_area(
    db: AsyncSession,
    x,
    y,
    width,
    height,
    exclude_id: Optional[int] = None
) -> AreaCheck:
    """
    Check whether a rectangle can be reserved.

    Malformed coordinates raise ValidationError. A well formed rectangle
    that is out of size bounds or overlaps a live placement comes back as
    unavailable. The answer is a hint; the ledger re-checks when it reserves.
    """
    validate_area(x, y, width, height)

    problem = size_problem(width, height)
    if problem:
        return AreaCheck(available=False, reason=problem)

    conflicts = await ledger.find_overlapping(db, x, y, width, height, exclude_id=exclude_id)
    if conflicts:
        return AreaCheck(
            available=False,
            conflicting_ids=[p.id for p in conflicts],
            reason="Area overlaps an existing placement",
        )

    return AreaCheck(available=True)
