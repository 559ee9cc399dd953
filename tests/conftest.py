import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_gateway.db")
os.environ["JWT_SECRET"] = "test-secret"
os.environ["KASPA_SWEEP_ENABLED"] = "false"

import base58
import httpx
import pytest

import kaspa_gateway.models  # noqa: F401  (registers tables)
from kaspa_gateway.database import Base, create_session_factory
from kaspa_gateway.derivation import KPUB_VERSION

# Compressed secp256k1 generator point, a valid public key with a known encoding
GENERATOR_PUBKEY = bytes.fromhex("0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798")


def make_kpub(public_key=GENERATOR_PUBKEY, chain_code=bytes(range(32)), depth=3):
    raw = (
        KPUB_VERSION
        + bytes([depth])
        + b"\x00\x00\x00\x00"
        + (0x80000000).to_bytes(4, "big")
        + chain_code
        + public_key
    )
    return base58.b58encode_check(raw).decode()


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeKaspaApi:
    """In-memory stand-in for api.kaspa.org behind an httpx.MockTransport."""

    def __init__(self):
        self.transactions = {}
        self.balances = {}
        self.failing = False
        self.timing_out = False
        self.requests = []

    def add_payment(self, address, amount, block_time, tx_id):
        tx = {
            "transaction_id": tx_id,
            "block_time": block_time,
            "is_accepted": True,
            "outputs": [{"script_public_key_address": address, "amount": amount}],
        }
        self.transactions.setdefault(address, []).insert(0, tx)
        self.balances[address] = self.balances.get(address, 0) + amount

    def handler(self, request):
        self.requests.append(request)
        if self.timing_out:
            raise httpx.ReadTimeout("timed out", request=request)
        if self.failing:
            return httpx.Response(503, json={"detail": "unavailable"})

        _, _, address, resource = request.url.path.split("/", 3)
        if resource == "balance":
            return httpx.Response(200, json={"address": address, "balance": self.balances.get(address, 0)})
        if resource == "full-transactions":
            return httpx.Response(200, json=self.transactions.get(address, []))
        return httpx.Response(404, json={"detail": "not found"})

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)


def rate_transport(usd=2.0, failing=()):
    def handler(request):
        if request.url.host in failing:
            raise httpx.ConnectTimeout("timed out", request=request)
        if request.url.host == "api.coingecko.com":
            return httpx.Response(200, json={"kaspa": {"usd": usd}})
        return httpx.Response(200, json={"USD": usd})

    return httpx.MockTransport(handler)


@pytest.fixture
def kpub():
    return make_kpub()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_api():
    return FakeKaspaApi()


@pytest.fixture
def session_factory(tmp_path):
    SessionLocal = create_session_factory(f"sqlite:///{tmp_path}/payments.db")
    engine = SessionLocal.kw["bind"]
    Base.metadata.create_all(bind=engine)
    yield SessionLocal
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
