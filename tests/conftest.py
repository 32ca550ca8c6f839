"""
Shared fixtures: a SQLite database per test, an in-memory chain behind the
RPC interface and an in-memory Redis.
"""
import asyncio
import base64
import os
import tempfile

from solders.hash import Hash
from solders.keypair import Keypair
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import Transaction

# Settings are read at import time
RECIPIENT = Keypair()
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{tempfile.mkdtemp(prefix='pixelcanvas-')}/default.db"
os.environ["RECIPIENT_WALLET_ADDRESS"] = str(RECIPIENT.pubkey())
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["SOLANA_NETWORK"] = "devnet"

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from pixelcanvas.core.database import Base, init_db  # noqa: E402
from pixelcanvas.models.models import Placement, PlacementStatus  # noqa: E402
from pixelcanvas.services import ledger  # noqa: E402
from pixelcanvas.services.pricing import calculate_cost, get_token  # noqa: E402
from pixelcanvas.services.redis_service import redis_service  # noqa: E402
from pixelcanvas.services.rpc_manager import RPCError  # noqa: E402
from pixelcanvas.services.tx_driver import KeypairSigner, TransactionDriver  # noqa: E402
from pixelcanvas.services.verifier import TransactionVerifier  # noqa: E402

TRANSFER_TAG = (2).to_bytes(4, "little")
FEE = 5000


# ============================================================
# FAKE CHAIN
# ============================================================

class FakeRPC:
    """
    Stands in for RPCManager. Keeps lamport balances and applies system
    transfers from the transactions it is sent.
    """

    def __init__(self):
        self.balances = {}
        self.token_balances = {}
        self.transactions = {}
        self.statuses = {}
        self.sent = []
        self.block_height = 1000
        self.blockhashes = []
        # Leave sent transactions unconfirmed
        self.hold = False
        # method name -> RPCError returned instead of a result
        self.errors = {}

    def _error(self, method):
        return self.errors.get(method)

    async def get_balance(self, address):
        if self._error("get_balance"):
            return None, self._error("get_balance")
        return self.balances.get(address, 0), None

    async def get_token_account_balance(self, token_account):
        if self._error("get_token_account_balance"):
            return None, self._error("get_token_account_balance")
        return self.token_balances.get(token_account, 0), None

    async def get_latest_blockhash(self):
        if self._error("get_latest_blockhash"):
            return None, self._error("get_latest_blockhash")
        blockhash = str(Hash.new_unique())
        self.blockhashes.append(blockhash)
        return {"blockhash": blockhash, "lastValidBlockHeight": self.block_height + 150}, None

    async def get_block_height(self):
        if self._error("get_block_height"):
            return None, self._error("get_block_height")
        return self.block_height, None

    async def send_transaction(self, signed_tx, skip_preflight=False):
        if self._error("send_transaction"):
            return None, self._error("send_transaction")

        tx = Transaction.from_bytes(base64.b64decode(signed_tx))
        signature = str(tx.signatures[0])
        if signature in self.transactions:
            return None, RPCError("Transaction simulation failed: This transaction has already been processed", code=-32002)

        self.sent.append(signature)
        record = self._apply(tx)
        self.transactions[signature] = record
        if not self.hold:
            self.statuses[signature] = {"slot": record["slot"], "err": None, "confirmationStatus": "confirmed"}
        return signature, None

    def _apply(self, tx: Transaction) -> dict:
        keys = [str(k) for k in tx.message.account_keys]
        pre = [self.balances.get(k, 0) for k in keys]

        self.balances[keys[0]] = self.balances.get(keys[0], 0) - FEE
        for ix in tx.message.instructions:
            if keys[ix.program_id_index] != str(SYSTEM_PROGRAM_ID) or bytes(ix.data[:4]) != TRANSFER_TAG:
                continue
            lamports = int.from_bytes(bytes(ix.data[4:12]), "little")
            source, dest = keys[ix.accounts[0]], keys[ix.accounts[1]]
            self.balances[source] = self.balances.get(source, 0) - lamports
            self.balances[dest] = self.balances.get(dest, 0) + lamports

        post = [self.balances.get(k, 0) for k in keys]
        return {
            "slot": 4242,
            "blockTime": 1700000000,
            "meta": {
                "err": None,
                "fee": FEE,
                "preBalances": pre,
                "postBalances": post,
                "preTokenBalances": [],
                "postTokenBalances": [],
            },
            "transaction": {
                "message": {"accountKeys": [{"pubkey": k, "signer": i == 0} for i, k in enumerate(keys)]},
                "signatures": [str(tx.signatures[0])],
            },
        }

    def land(self, signature):
        """Confirm a held transaction"""
        self.statuses[signature] = {"slot": 4242, "err": None, "confirmationStatus": "confirmed"}

    async def get_signature_status(self, signature):
        if self._error("get_signature_status"):
            return None, self._error("get_signature_status")
        return self.statuses.get(signature), None

    async def get_transaction(self, signature):
        if self._error("get_transaction"):
            return None, self._error("get_transaction")
        if signature not in self.statuses:
            return None, None
        return self.transactions.get(signature), None


# ============================================================
# FAKE REDIS
# ============================================================

class FakeLock:
    def __init__(self, lock: asyncio.Lock):
        self._lock = lock

    async def __aenter__(self):
        await self._lock.acquire()
        return self

    async def __aexit__(self, *exc):
        self._lock.release()


class FakeRedis:
    """The slice of redis.asyncio.Redis the service uses, in memory"""

    def __init__(self):
        self.values = {}
        self.hashes = {}
        self.ttls = {}
        self._mutex = asyncio.Lock()

    def lock(self, name, timeout=None, blocking_timeout=None):
        return FakeLock(self._mutex)

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    async def hset(self, key, field, value):
        self.hashes.setdefault(key, {})[field] = value
        return 1

    async def hdel(self, key, *fields):
        table = self.hashes.get(key, {})
        return sum(1 for f in fields if table.pop(f, None) is not None)

    async def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    async def incr(self, key):
        self.values[key] = int(self.values.get(key, 0)) + 1
        return self.values[key]

    async def setex(self, key, seconds, value):
        self.values[key] = value
        self.ttls[key] = seconds
        return True

    async def get(self, key):
        return self.values.get(key)

    async def aclose(self):
        pass


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/canvas.db")
    await init_db(bind=engine)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def fake_rpc():
    return FakeRPC()


@pytest.fixture
def fake_redis(monkeypatch):
    client = FakeRedis()
    monkeypatch.setattr(redis_service, "_client", client)
    return client


@pytest.fixture
def driver(fake_rpc):
    return TransactionDriver(rpc=fake_rpc, network="devnet", confirmation_timeout=0.2, poll_interval=0.01, signer_timeout=0.2)


@pytest.fixture
def tx_verifier(fake_rpc):
    return TransactionVerifier(rpc=fake_rpc, network="devnet")


@pytest.fixture
def recipient():
    return str(RECIPIENT.pubkey())


@pytest.fixture
def payer(fake_rpc):
    keypair = Keypair()
    fake_rpc.balances[str(keypair.pubkey())] = 10 ** 9
    return keypair


@pytest.fixture
def signer(payer):
    return KeypairSigner(payer)


@pytest.fixture
def make_placement(db):
    async def make(x=0, y=0, width=100, height=100, owner="owner-wallet", token="SOL"):
        info = get_token(token)
        placement = Placement(
            x=x,
            y=y,
            width=width,
            height=height,
            image_location=f"https://images.example/{x}-{y}.png",
            owner_wallet=owner,
            status=PlacementStatus.PENDING_PAYMENT,
            cost=calculate_cost(width, height, info),
            token=info.symbol,
            payment_attempts=0,
        )
        await ledger.insert(db, placement)
        return placement

    return make
