"""
Tests for the REST API layer.

Covers:
  - Signed deposit / withdraw / claim / fund round trips
  - Caller identity taken from the signature, replay and tamper rejection
  - Ledger error → HTTP status mapping
  - Read-only endpoints (health, staking, balance, events)
  - Rate limiting and CORS middleware
"""

from __future__ import annotations

import pytest
from aiohttp.test_utils import TestClient, TestServer

from tierstake_core.api import APIServer, _TokenBucket
from tierstake_core.auth import KeyPair
from tierstake_core.config import APIConfig, TierStakeConfig
from tierstake_core.errors import CompensationFailed
from tierstake_core.node import StakingNode
from tierstake_core.staking import DAY_SECONDS

# ─── Helpers ────────────────────────────────────────────────────────


class _Clock:
    def __init__(self):
        self.t = 0

    def __call__(self):
        return self.t


@pytest.fixture
def alice():
    return KeyPair.from_seed("api-alice")


@pytest.fixture
def admin():
    return KeyPair.from_seed("api-admin")


@pytest.fixture
def clock():
    return _Clock()


@pytest.fixture
def node(alice, admin, clock):
    cfg = TierStakeConfig()
    cfg.staking.admins = [admin.address]
    cfg.genesis.staked = {alice.address: 10_000}
    cfg.genesis.reward = {admin.address: 1_000_000}
    return StakingNode(cfg, clock=clock)


def _make_test_client(node, api_config: APIConfig | None = None) -> TestClient:
    api = APIServer(node, host="127.0.0.1", port=0, api_config=api_config)
    return TestClient(TestServer(api.make_app()))


# ═══════════════════════════════════════════════════════════════════
#  Signed operations
# ═══════════════════════════════════════════════════════════════════

class TestOperations:
    @pytest.mark.asyncio
    async def test_deposit(self, node, alice):
        async with _make_test_client(node) as client:
            resp = await client.post("/stake/deposit", json=alice.sign_request("deposit", amount=1000))
            assert resp.status == 200
            data = await resp.json()
            assert data["staker"] == alice.address
            assert data["amount"] == 1000
        assert node.ledger.total_staked == 1000
        assert node.staked_asset.balance_of(alice.address) == 9000

    @pytest.mark.asyncio
    async def test_claim_after_forty_days(self, node, alice, admin, clock):
        async with _make_test_client(node) as client:
            await client.post("/stake/deposit", json=alice.sign_request("deposit", amount=1000))
            resp = await client.post("/pool/fund", json=admin.sign_request("fund", amount=1000))
            assert resp.status == 200
            assert (await resp.json())["reward_pool"] == 1000

            clock.t = 40 * DAY_SECONDS
            resp = await client.post("/stake/claim", json=alice.sign_request("claim"))
            assert resp.status == 200
            assert (await resp.json())["reward_paid"] == 5
        assert node.ledger.reward_pool == 995

    @pytest.mark.asyncio
    async def test_withdraw(self, node, alice):
        async with _make_test_client(node) as client:
            await client.post("/stake/deposit", json=alice.sign_request("deposit", amount=1000))
            resp = await client.post("/stake/withdraw", json=alice.sign_request("withdraw", amount=400))
            assert resp.status == 200
            data = await resp.json()
            assert data["remaining"] == 600
            assert data["reward_paid"] == 0

    @pytest.mark.asyncio
    async def test_identity_cannot_be_spoofed_by_body_field(self, node, alice):
        async with _make_test_client(node) as client:
            body = alice.sign_request("deposit", amount=100, staker="rSomeoneElse")
            resp = await client.post("/stake/deposit", json=body)
            assert resp.status == 200
        assert node.ledger.get_stake("rSomeoneElse").amount == 0
        assert node.ledger.get_stake(alice.address).amount == 100


# ═══════════════════════════════════════════════════════════════════
#  Authentication
# ═══════════════════════════════════════════════════════════════════

class TestAuthentication:
    @pytest.mark.asyncio
    async def test_replay_rejected(self, node, alice):
        body = alice.sign_request("deposit", amount=100)
        async with _make_test_client(node) as client:
            assert (await client.post("/stake/deposit", json=body)).status == 200
            assert (await client.post("/stake/deposit", json=body)).status == 401
        assert node.staked_asset.balance_of(alice.address) == 9900

    @pytest.mark.asyncio
    async def test_tampered_amount_rejected(self, node, alice):
        body = alice.sign_request("withdraw", amount=1)
        body["amount"] = 9999
        async with _make_test_client(node) as client:
            resp = await client.post("/stake/withdraw", json=body)
            assert resp.status == 401

    @pytest.mark.asyncio
    async def test_signature_bound_to_endpoint(self, node, alice):
        body = alice.sign_request("deposit", amount=100)
        async with _make_test_client(node) as client:
            resp = await client.post("/stake/withdraw", json=body)
            assert resp.status == 401

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/stake/withdraw", "/stake/claim", "/pool/fund"])
    async def test_deposit_envelope_cannot_drive_other_endpoints(self, node, alice, clock, path):
        async with _make_test_client(node) as client:
            await client.post("/stake/deposit", json=alice.sign_request("deposit", amount=1000))
            clock.t = 40 * DAY_SECONDS
            body = alice.sign_request("deposit", amount=1000)
            body["action"] = "deposit"
            resp = await client.post(path, json=body)
            assert resp.status == 401
        assert node.ledger.get_stake(alice.address).amount == 1000
        assert node.staked_asset.balance_of(alice.address) == 9000

    @pytest.mark.asyncio
    async def test_invalid_json(self, node):
        async with _make_test_client(node) as client:
            resp = await client.post("/stake/claim", data="not json{")
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_unsigned_body(self, node):
        async with _make_test_client(node) as client:
            resp = await client.post("/stake/deposit", json={"amount": 10})
            assert resp.status == 401


# ═══════════════════════════════════════════════════════════════════
#  Error mapping
# ═══════════════════════════════════════════════════════════════════

class TestErrorMapping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [None, 1.5, "10", True])
    async def test_non_integer_amount(self, node, alice, amount):
        async with _make_test_client(node) as client:
            resp = await client.post("/stake/deposit", json=alice.sign_request("deposit", amount=amount))
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_zero_amount(self, node, alice):
        async with _make_test_client(node) as client:
            resp = await client.post("/stake/deposit", json=alice.sign_request("deposit", amount=0))
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_deposit_over_balance(self, node, alice):
        async with _make_test_client(node) as client:
            resp = await client.post("/stake/deposit", json=alice.sign_request("deposit", amount=10_001))
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_withdraw_more_than_staked(self, node, alice):
        async with _make_test_client(node) as client:
            await client.post("/stake/deposit", json=alice.sign_request("deposit", amount=100))
            resp = await client.post("/stake/withdraw", json=alice.sign_request("withdraw", amount=101))
            assert resp.status == 400
        assert node.ledger.get_stake(alice.address).amount == 100

    @pytest.mark.asyncio
    async def test_claim_without_stake(self, node, alice):
        async with _make_test_client(node) as client:
            resp = await client.post("/stake/claim", json=alice.sign_request("claim"))
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_fund_by_non_admin_forbidden(self, node, alice):
        async with _make_test_client(node) as client:
            resp = await client.post("/pool/fund", json=alice.sign_request("fund", amount=10))
            assert resp.status == 403
        assert node.ledger.reward_pool == 0

    @pytest.mark.asyncio
    async def test_unrecoverable_failure_is_server_error(self, node, alice, monkeypatch):
        def broken_claim(_staker):
            raise CompensationFailed("claim failed and could not be undone: out 5 with x")

        monkeypatch.setattr(node.ledger, "claim_reward", broken_claim)
        async with _make_test_client(node) as client:
            resp = await client.post("/stake/claim", json=alice.sign_request("claim"))
            assert resp.status == 500

    @pytest.mark.asyncio
    async def test_fund_beyond_admin_balance_conflicts(self, node, admin):
        async with _make_test_client(node) as client:
            resp = await client.post("/pool/fund", json=admin.sign_request("fund", amount=1_000_001))
            assert resp.status == 409
        assert node.ledger.reward_pool == 0


# ═══════════════════════════════════════════════════════════════════
#  Read-only endpoints
# ═══════════════════════════════════════════════════════════════════

class TestQueries:
    @pytest.mark.asyncio
    async def test_health(self, node):
        async with _make_test_client(node) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            assert (await resp.json())["ok"] is True

    @pytest.mark.asyncio
    async def test_staking_pool(self, node):
        async with _make_test_client(node) as client:
            data = await (await client.get("/staking")).json()
            assert data["total_staked"] == 0
            assert [t["rate_pct"] for t in data["tiers"]] == [0, 5, 10, 15]

    @pytest.mark.asyncio
    async def test_staking_info(self, node, alice, clock):
        async with _make_test_client(node) as client:
            await client.post("/stake/deposit", json=alice.sign_request("deposit", amount=1000))
            clock.t = 40 * DAY_SECONDS
            data = await (await client.get(f"/staking/{alice.address}")).json()
            assert data["amount"] == 1000
            assert data["state"] == "active"
            assert data["rate_pct"] == 5
            assert data["pending_reward"] == 5

    @pytest.mark.asyncio
    async def test_unknown_staker(self, node):
        async with _make_test_client(node) as client:
            data = await (await client.get("/staking/tNobody")).json()
            assert data["amount"] == 0
            assert data["state"] == "no_stake"

    @pytest.mark.asyncio
    async def test_balance(self, node, alice):
        async with _make_test_client(node) as client:
            data = await (await client.get(f"/balance/{alice.address}")).json()
            assert data["STK"] == 10_000
            assert data["RWD"] == 0

    @pytest.mark.asyncio
    async def test_events(self, node, alice, admin):
        async with _make_test_client(node) as client:
            await client.post("/pool/fund", json=admin.sign_request("fund", amount=50))
            await client.post("/stake/deposit", json=alice.sign_request("deposit", amount=10))
            data = await (await client.get("/events")).json()
            assert [e["kind"] for e in data["events"]] == ["PoolFunded", "Deposited"]
            assert data["next"] == 2
            assert data["first"] == 0
            data = await (await client.get("/events?since=1")).json()
            assert len(data["events"]) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("since", ["-1", "abc"])
    async def test_events_bad_since(self, node, since):
        async with _make_test_client(node) as client:
            resp = await client.get(f"/events?since={since}")
            assert resp.status == 400


# ═══════════════════════════════════════════════════════════════════
#  Middleware
# ═══════════════════════════════════════════════════════════════════

class TestMiddleware:
    def test_token_bucket(self):
        bucket = _TokenBucket(2)
        assert bucket.allow("1.1.1.1")
        assert bucket.allow("1.1.1.1")
        assert not bucket.allow("1.1.1.1")
        assert bucket.allow("2.2.2.2")

    def test_token_bucket_forgets_refilled_ips(self, monkeypatch):
        now = [1000.0]
        monkeypatch.setattr("tierstake_core.api.time.monotonic", lambda: now[0])
        bucket = _TokenBucket(60, max_tracked=2)
        assert bucket.allow("1.1.1.1")
        assert bucket.allow("2.2.2.2")
        # nothing has refilled yet, so nothing is forgotten
        assert bucket.allow("3.3.3.3")
        assert len(bucket) == 3

        now[0] += 1.0
        assert bucket.allow("4.4.4.4")
        assert len(bucket) == 1

    def test_token_bucket_unlimited(self):
        bucket = _TokenBucket(0)
        assert all(bucket.allow("x") for _ in range(500))

    @pytest.mark.asyncio
    async def test_rate_limit_enforced(self, node):
        cfg = APIConfig(rate_limit_rpm=2)
        async with _make_test_client(node, cfg) as client:
            assert (await client.get("/health")).status == 200
            assert (await client.get("/health")).status == 200
            assert (await client.get("/health")).status == 429

    @pytest.mark.asyncio
    async def test_cors_allowed_origin(self, node):
        cfg = APIConfig(rate_limit_rpm=0, cors_origins=["https://dash.example"])
        async with _make_test_client(node, cfg) as client:
            resp = await client.get("/health", headers={"Origin": "https://dash.example"})
            assert resp.headers["Access-Control-Allow-Origin"] == "https://dash.example"
            resp = await client.get("/health", headers={"Origin": "https://evil.example"})
            assert "Access-Control-Allow-Origin" not in resp.headers

    @pytest.mark.asyncio
    async def test_cors_wildcard_ignored(self, node):
        cfg = APIConfig(rate_limit_rpm=0, cors_origins=["*"])
        async with _make_test_client(node, cfg) as client:
            resp = await client.get("/health", headers={"Origin": "https://any.example"})
            assert "Access-Control-Allow-Origin" not in resp.headers

    @pytest.mark.asyncio
    async def test_body_size_cap(self, node, alice):
        cfg = APIConfig(rate_limit_rpm=0, max_body_bytes=64)
        async with _make_test_client(node, cfg) as client:
            body = alice.sign_request("deposit", amount=1, padding="x" * 200)
            resp = await client.post("/stake/deposit", json=body)
            assert resp.status == 413
