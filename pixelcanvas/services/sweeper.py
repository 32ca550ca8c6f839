"""
Pixel Canvas - Reconciliation Sweeper
Times out stale payment sessions and releases abandoned placements.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from pixelcanvas.core.config import settings
from pixelcanvas.core.database import AsyncSessionLocal
from pixelcanvas.core.errors import AppError, InvalidStateError
from pixelcanvas.models.models import PlacementStatus, SessionStatus
from pixelcanvas.services import ledger, payment_sessions
from pixelcanvas.services.verifier import TransactionVerifier, verifier as default_verifier

logger = logging.getLogger(__name__)

LAST_RUN_KEY = "sweeper:last_run"


async def sweep_stale_sessions(
    now: Optional[datetime] = None,
    session_maker=None,
    verifier: Optional[TransactionVerifier] = None
) -> dict:
    """
    Settle active sessions whose deadline passed.

    A session with a signature is resolved against the chain first. It ends
    TIMEOUT only once that signature has expired unseen; while it may still
    land, or the RPC is down, the session is left for the next sweep.
    """
    now = now or datetime.utcnow()
    session_maker = session_maker or AsyncSessionLocal
    verifier = verifier or default_verifier
    report = {"checked": 0, "confirmed": 0, "failed": 0, "timed_out": 0, "skipped": 0}

    async with session_maker() as db:
        stale = await payment_sessions.find_stale(db, now)

        for session in stale:
            report["checked"] += 1
            try:
                if session.transaction_signature:
                    result = await verifier.resolve_submitted(db, session.id, now)
                    if result is not None:
                        report["confirmed" if result.confirmed else "failed"] += 1
                        continue

                await payment_sessions.finalize(db, session.id, SessionStatus.TIMEOUT)
                report["timed_out"] += 1
                logger.info(f"Payment session {session.id} timed out, placement {session.placement_id} released")

            except InvalidStateError as e:
                # In flight, or settled by a request while we were looking
                report["skipped"] += 1
                logger.info(f"Payment session {session.id} left for the next sweep: {e.message}")
            except AppError as e:
                report["skipped"] += 1
                logger.error(f"Sweep of payment session {session.id} failed: {e.message}")

    return report


async def sweep_abandoned_placements(now: Optional[datetime] = None, session_maker=None) -> int:
    """Placements that never started a payment give their area back"""
    now = now or datetime.utcnow()
    session_maker = session_maker or AsyncSessionLocal
    cutoff = now - timedelta(minutes=settings.ABANDONED_PLACEMENT_MINUTES)

    async with session_maker() as db:
        abandoned = await ledger.find_abandoned(db, cutoff)
        released = await ledger.release_many(db, [p.id for p in abandoned], PlacementStatus.NOT_INITIATED)

    if released:
        logger.info(f"Released {released} abandoned placement(s)")
    return released


async def run_sweep(now: Optional[datetime] = None, session_maker=None, verifier=None) -> dict:
    now = now or datetime.utcnow()
    report = await sweep_stale_sessions(now, session_maker, verifier)
    report["abandoned_released"] = await sweep_abandoned_placements(now, session_maker)
    report["ran_at"] = now.isoformat()
    return report


# Sweeper runner
async def run_sweeper(interval: Optional[int] = None):
    """
    Main sweeper loop.
    """
    from pixelcanvas.services.redis_service import redis_service

    interval = interval or settings.SWEEP_INTERVAL_SECONDS
    print(f"[SWEEPER] Starting reconciliation sweeper (every {interval}s)")

    while True:
        try:
            report = await run_sweep()
            if report["checked"] or report["abandoned_released"]:
                print(f"[SWEEPER] {report}")
            await redis_service.set_state(LAST_RUN_KEY, report)
        except Exception as e:
            print(f"[SWEEPER] Error: {e}")

        await asyncio.sleep(interval)


def start_sweeper() -> asyncio.Task:
    """
    Start the sweeper as an asyncio task.
    Call this from main.py startup.
    """
    return asyncio.create_task(run_sweeper())
