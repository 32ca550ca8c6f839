"""
Pixel Canvas - RPC Manager
Solana JSON-RPC client with endpoint failover, health checks and stats.
"""
import asyncio
import time
from datetime import datetime, timedelta
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
from urllib.parse import urlsplit
import aiohttp
import logging

from pixelcanvas.core.config import settings

logger = logging.getLogger(__name__)


# ============================================================
# RPC CONFIGURATION
# ============================================================

NETWORK_ENDPOINTS = {
    "devnet": "https://api.devnet.solana.com",
    "testnet": "https://api.testnet.solana.com",
    "mainnet-beta": "https://api.mainnet-beta.solana.com",
}

RATE_LIMIT_COOLDOWN = timedelta(seconds=60)
HEALTH_CHECK_TIMEOUT = 5.0


def mask_url(url: str) -> str:
    """Scheme and host only; provider URLs carry API keys in the path, query or userinfo"""
    parts = urlsplit(url)
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return f"{parts.scheme}://{host}" if parts.scheme else host


class RPCStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"
    RATE_LIMITED = "rate_limited"


@dataclass
class RPCEndpoint:
    """One Solana node and what we have seen of it"""
    id: str
    name: str
    url: str
    enabled: bool = True
    priority: int = 1  # Lower = tried first

    status: RPCStatus = RPCStatus.HEALTHY
    total_requests: int = 0
    total_errors: int = 0
    last_latency_ms: float = 0.0
    avg_latency_ms: float = 0.0
    last_health_check: Optional[datetime] = None
    last_error: Optional[str] = None
    rate_limit_until: Optional[datetime] = None

    def record(self, latency_ms: float):
        self.total_requests += 1
        self.last_latency_ms = latency_ms
        # Exponential moving average
        self.avg_latency_ms = self.avg_latency_ms * 0.9 + latency_ms * 0.1

    def fail(self, reason: str, status: Optional[RPCStatus] = None):
        self.total_errors += 1
        self.last_error = reason
        if status:
            self.status = status

    def cooling_down(self, now: datetime) -> bool:
        return bool(self.rate_limit_until and now < self.rate_limit_until)

    def to_dict(self) -> dict:
        ok = self.total_requests - self.total_errors
        return {
            "id": self.id,
            "name": self.name,
            "url": mask_url(self.url),
            "status": self.status.value,
            "enabled": self.enabled,
            "priority": self.priority,
            "total_requests": self.total_requests,
            "total_errors": self.total_errors,
            "success_rate": round(ok / self.total_requests * 100, 2) if self.total_requests else 100,
            "latency_ms": round(self.avg_latency_ms, 2),
            "last_latency_ms": round(self.last_latency_ms, 2),
            "last_health_check": self.last_health_check.isoformat() if self.last_health_check else None,
            "last_error": self.last_error.replace(self.url, mask_url(self.url)) if self.last_error else None,
        }


@dataclass
class RPCError:
    """
    A failed RPC call.
    transport=True means no endpoint gave an answer; otherwise the node
    answered with a JSON-RPC error.
    """
    message: str
    code: Optional[int] = None
    data: Any = None
    transport: bool = False

    def __str__(self) -> str:
        return self.message


# ============================================================
# RPC MANAGER
# ============================================================

class RPCManager:
    """
    Solana RPC access for the payment flow.

    Endpoints are tried in priority order, healthy ones first. Transport
    failures, 5xx and 429 move on to the next endpoint; a JSON-RPC error
    from a node is final because every node would give the same answer.
    """

    def __init__(self, network: Optional[str] = None, urls: Optional[List[str]] = None):
        self.network = network or settings.SOLANA_NETWORK
        self.endpoints: Dict[str, RPCEndpoint] = {}
        self._health_check_task: Optional[asyncio.Task] = None

        if urls is None:
            urls = self._configured_urls()
        for priority, url in enumerate(urls, start=1):
            self.add_endpoint(RPCEndpoint(
                id=f"rpc{priority}",
                name="Primary" if priority == 1 else f"Fallback {priority - 1}",
                url=url,
                priority=priority,
            ))

    def _configured_urls(self) -> List[str]:
        urls = []
        if settings.SOLANA_RPC_URL:
            urls.append(settings.SOLANA_RPC_URL)
        urls.extend(settings.fallback_rpc_urls)
        default = NETWORK_ENDPOINTS.get(self.network)
        if default:
            urls.append(default)
        # Keep order, drop repeats
        return list(dict.fromkeys(urls))

    # ============================================================
    # ENDPOINT SELECTION
    # ============================================================

    def available_endpoints(self) -> List[RPCEndpoint]:
        """Usable endpoints, best first"""
        now = datetime.utcnow()
        enabled = [e for e in self.endpoints.values() if e.enabled]
        usable = [e for e in enabled if e.status != RPCStatus.DOWN and not e.cooling_down(now)]
        # Nothing looks usable: try them all rather than fail outright
        candidates = usable or enabled
        return sorted(candidates, key=lambda e: (e.status != RPCStatus.HEALTHY, e.priority))

    # ============================================================
    # RPC REQUESTS
    # ============================================================

    async def _post(self, endpoint: RPCEndpoint, payload: dict, timeout: float) -> Tuple[int, Optional[dict], float]:
        """POST one JSON-RPC payload. Returns (http status, body or None, latency ms)"""
        started = time.monotonic()
        async with aiohttp.ClientSession() as session:
            async with session.post(
                endpoint.url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=timeout)
            ) as resp:
                body = await resp.json(content_type=None) if resp.status == 200 else None
                return resp.status, body, (time.monotonic() - started) * 1000

    async def call(
        self,
        method: str,
        params: list = None,
        timeout: Optional[float] = None
    ) -> Tuple[Optional[Any], Optional[RPCError]]:
        """
        Make an RPC call with automatic failover.
        Returns: (result, error)
        """
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params or []}
        timeout = timeout or settings.RPC_TIMEOUT_SECONDS
        failures = []

        endpoints = self.available_endpoints()[:settings.RPC_MAX_ENDPOINT_ATTEMPTS]
        if not endpoints:
            return None, RPCError("No RPC endpoints available", transport=True)

        for endpoint in endpoints:
            try:
                status, body, latency = await self._post(endpoint, payload, timeout)
            except asyncio.TimeoutError:
                endpoint.fail("Timeout", RPCStatus.DEGRADED)
                failures.append(f"{endpoint.name}: Timeout")
                continue
            except (aiohttp.ClientError, ValueError) as e:
                endpoint.fail(str(e))
                failures.append(f"{endpoint.name}: {e}")
                continue

            endpoint.record(latency)

            if status == 429:
                endpoint.status = RPCStatus.RATE_LIMITED
                endpoint.rate_limit_until = datetime.utcnow() + RATE_LIMIT_COOLDOWN
                failures.append(f"{endpoint.name}: Rate limited")
                continue
            if status != 200 or body is None:
                endpoint.fail(f"HTTP {status}")
                failures.append(f"{endpoint.name}: HTTP {status}")
                continue

            endpoint.status = RPCStatus.HEALTHY
            if "error" in body:
                err = body["error"] or {}
                return None, RPCError(
                    message=err.get("message", str(err)),
                    code=err.get("code"),
                    data=err.get("data"),
                )
            return body.get("result"), None

        logger.warning(f"RPC {method} failed on all endpoints: {'; '.join(failures)}")
        return None, RPCError("; ".join(failures), transport=True)
    # ============================================================
    # METHODS
    # ============================================================

    async def get_balance(self, address: str) -> Tuple[Optional[int], Optional[RPCError]]:
        """Lamport balance of an account"""
        result, error = await self.call("getBalance", [address, {"commitment": "confirmed"}])
        if error:
            return None, error
        return int(result["value"]), None

    async def get_token_account_balance(self, token_account: str) -> Tuple[Optional[int], Optional[RPCError]]:
        """Raw token amount of a token account; 0 when the account does not exist"""
        result, error = await self.call("getTokenAccountBalance", [token_account, {"commitment": "confirmed"}])
        if error:
            if not error.transport and "could not find account" in error.message.lower():
                return 0, None
            return None, error
        return int(result["value"]["amount"]), None

    async def get_latest_blockhash(self) -> Tuple[Optional[dict], Optional[RPCError]]:
        """{"blockhash": str, "lastValidBlockHeight": int}"""
        result, error = await self.call("getLatestBlockhash", [{"commitment": "confirmed"}])
        if error:
            return None, error
        return result["value"], None

    async def get_block_height(self) -> Tuple[Optional[int], Optional[RPCError]]:
        return await self.call("getBlockHeight", [{"commitment": "confirmed"}])

    async def send_transaction(self, signed_tx: str, skip_preflight: bool = False) -> Tuple[Optional[str], Optional[RPCError]]:
        """
        Send a base64 encoded signed transaction.
        Returns: (signature, error)
        """
        params = [
            signed_tx,
            {
                "encoding": "base64",
                "skipPreflight": skip_preflight,
                "preflightCommitment": "confirmed",
                "maxRetries": 3
            }
        ]
        return await self.call("sendTransaction", params, timeout=30.0)

    async def get_signature_status(self, signature: str) -> Tuple[Optional[dict], Optional[RPCError]]:
        """Status of one signature, searching transaction history; None when unknown"""
        result, error = await self.call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}]
        )
        if error:
            return None, error
        statuses = (result or {}).get("value") or [None]
        return statuses[0], None

    async def get_transaction(self, signature: str) -> Tuple[Optional[dict], Optional[RPCError]]:
        """Parsed confirmed transaction; None when the chain does not know it"""
        return await self.call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": "confirmed",
                    "maxSupportedTransactionVersion": 0
                }
            ]
        )


    # ============================================================
    # HEALTH CHECKS
    # ============================================================

    async def start_health_checks(self, interval: Optional[int] = None):
        """Start background health check loop"""
        interval = interval or settings.RPC_HEALTH_CHECK_INTERVAL
        self._health_check_task = asyncio.create_task(self._health_check_loop(interval))

    async def stop_health_checks(self):
        if self._health_check_task:
            self._health_check_task.cancel()
            try:
                await self._health_check_task
            except asyncio.CancelledError:
                pass
            self._health_check_task = None

    async def _health_check_loop(self, interval: int):
        while True:
            try:
                await self._run_health_checks()
            except Exception as e:
                logger.error(f"Health check error: {e}")
            await asyncio.sleep(interval)

    async def _check_endpoint(self, endpoint: RPCEndpoint):
        payload = {"jsonrpc": "2.0", "id": 1, "method": "getHealth"}
        try:
            status, body, latency = await self._post(endpoint, payload, HEALTH_CHECK_TIMEOUT)
        except (asyncio.TimeoutError, aiohttp.ClientError, ValueError) as e:
            endpoint.status = RPCStatus.DOWN
            endpoint.last_error = str(e) or type(e).__name__
            logger.warning(f"RPC {endpoint.name} health check failed: {endpoint.last_error}")
            return

        endpoint.last_health_check = datetime.utcnow()
        endpoint.last_latency_ms = latency
        if status == 429:
            endpoint.status = RPCStatus.RATE_LIMITED
        elif body is not None and body.get("result") == "ok":
            endpoint.status = RPCStatus.HEALTHY
        else:
            # Reachable but behind or erroring
            endpoint.status = RPCStatus.DEGRADED

    async def _run_health_checks(self):
        """Probe every enabled endpoint concurrently"""
        enabled = [e for e in self.endpoints.values() if e.enabled]
        await asyncio.gather(*(self._check_endpoint(e) for e in enabled))

    # ============================================================
    # ADMIN CONTROLS
    # ============================================================

    def add_endpoint(self, endpoint: RPCEndpoint):
        self.endpoints[endpoint.id] = endpoint

    def _set_enabled(self, endpoint_id: str, enabled: bool) -> bool:
        endpoint = self.endpoints.get(endpoint_id)
        if endpoint is None:
            return False
        endpoint.enabled = enabled
        logger.info(f"RPC {endpoint.name} {'enabled' if enabled else 'disabled'}")
        return True

    def enable_endpoint(self, endpoint_id: str) -> bool:
        return self._set_enabled(endpoint_id, True)

    def disable_endpoint(self, endpoint_id: str) -> bool:
        return self._set_enabled(endpoint_id, False)

    # ============================================================
    # STATS & MONITORING
    # ============================================================

    def get_stats(self) -> dict:
        """Endpoint health and usage, best endpoint first"""
        ordered = sorted(self.endpoints.values(), key=lambda e: e.priority)
        return {
            "network": self.network,
            "total_endpoints": len(ordered),
            "healthy_endpoints": sum(1 for e in ordered if e.status == RPCStatus.HEALTHY),
            "endpoints": [e.to_dict() for e in ordered],
        }


# ============================================================
# GLOBAL INSTANCE
# ============================================================

rpc_manager = RPCManager()


async def start_rpc_manager():
    """Initialize and start the RPC manager"""
    await rpc_manager.start_health_checks()
    logger.info(f"RPC Manager started on {rpc_manager.network} with {len(rpc_manager.endpoints)} endpoint(s)")
