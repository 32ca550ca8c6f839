"""
Pixel Canvas - Admin Routes
On-demand reconciliation and RPC monitoring.
"""
import logging

from fastapi import APIRouter, Depends
from redis.exceptions import RedisError

from pixelcanvas.core.database import AsyncSessionLocal
from pixelcanvas.core.errors import NotFoundError
from pixelcanvas.core.security import require_admin
from pixelcanvas.services.redis_service import redis_service
from pixelcanvas.services.rpc_manager import rpc_manager
from pixelcanvas.services.sweeper import LAST_RUN_KEY, run_sweep
from pixelcanvas.services.verifier import TransactionVerifier
from pixelcanvas.api.routes.payments import get_verifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


def get_session_maker():
    return AsyncSessionLocal


@router.post("/sweep")
async def trigger_sweep(
    session_maker=Depends(get_session_maker),
    tx_verifier: TransactionVerifier = Depends(get_verifier)
):
    """Run the reconciliation sweep now"""
    report = await run_sweep(session_maker=session_maker, verifier=tx_verifier)
    try:
        await redis_service.set_state(LAST_RUN_KEY, report)
    except RedisError as e:
        logger.warning(f"Could not store sweep report: {e}")
    return {"success": True, "report": report}


@router.get("/sweep")
async def last_sweep():
    return {"success": True, "report": await redis_service.get_state(LAST_RUN_KEY)}


@router.get("/rpc")
async def rpc_stats():
    """RPC endpoint health and usage"""
    return {"success": True, **rpc_manager.get_stats()}


@router.post("/rpc/{endpoint_id}/enable")
async def enable_rpc_endpoint(endpoint_id: str):
    if not rpc_manager.enable_endpoint(endpoint_id):
        raise NotFoundError(f"RPC endpoint {endpoint_id} not found")
    logger.info(f"RPC endpoint {endpoint_id} enabled")
    return {"success": True}


@router.post("/rpc/{endpoint_id}/disable")
async def disable_rpc_endpoint(endpoint_id: str):
    if not rpc_manager.disable_endpoint(endpoint_id):
        raise NotFoundError(f"RPC endpoint {endpoint_id} not found")
    logger.info(f"RPC endpoint {endpoint_id} disabled")
    return {"success": True}
