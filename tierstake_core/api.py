"""
REST / HTTP API server for a TierStake node.

Built on ``aiohttp``.  Ledger operations are synchronous and short, so
handlers call them directly; the ledger's own lock serialises them.

Endpoints
---------
GET  /health                  Liveness + staker count
GET  /staking                 Pool summary and rate tiers
GET  /staking/{address}       One staker's record, tier and pending reward
GET  /balance/{address}       Staked / reward asset balances
GET  /events?since=N          Ledger events from index N
POST /stake/deposit           Signed {"amount": int}
POST /stake/withdraw          Signed {"amount": int}
POST /stake/claim             Signed {}
POST /pool/fund               Signed {"amount": int}  (admins only)

Security
--------
- Caller identity comes from the signed envelope (see ``auth.py``), never
  from a body field.  Nonces must strictly increase per identity.
- Per-IP token-bucket rate limiter (configurable RPM).
- CORS middleware (origins configurable via ``cors_origins``).
- Request body size cap (``max_body_bytes``).

Usage:
    api = APIServer(node, host="127.0.0.1", port=8080)
    await api.start()    # call inside existing event loop
    ...
    await api.stop()
"""

from __future__ import annotations

import json
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Callable

from aiohttp import web

from tierstake_core.auth import AuthError, verify_request
from tierstake_core.errors import (
    CompensationFailed,
    InvariantViolation,
    StakingError,
    TransferFailed,
    Unauthorized,
)

if TYPE_CHECKING:
    from tierstake_core.config import APIConfig
    from tierstake_core.node import StakingNode

logger = logging.getLogger("tierstake_api")


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, default=str)


def _strict_int(value: Any, name: str = "value") -> int:
    """Accept JSON integers only (no bools, floats or numeric strings)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    return value


def _query_int(request: web.Request, name: str, default: int = 0) -> int:
    raw = request.query.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise web.HTTPBadRequest(text=f"{name} must be an integer")


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Simple per-IP token-bucket rate limiter."""

    __slots__ = ("_buckets", "_rpm", "_max_tracked")

    def __init__(self, rpm: int, max_tracked: int = 10_000):
        self._rpm = rpm  # 0 = unlimited
        self._max_tracked = max_tracked
        # ip -> (tokens, last_refill_timestamp)
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        now = time.monotonic()
        if ip not in self._buckets and len(self._buckets) >= self._max_tracked:
            self._prune(now)
        bucket = self._buckets[ip]
        elapsed = now - bucket[1]
        bucket[0] = min(float(self._rpm), bucket[0] + elapsed * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False

    def _prune(self, now: float) -> None:
        """Forget IPs whose bucket has refilled; they would start full anyway."""
        refill = 60.0 / self._rpm
        for ip, (tokens, last) in list(self._buckets.items()):
            if tokens + (now - last) / refill >= self._rpm:
                del self._buckets[ip]

    def __len__(self) -> int:
        return len(self._buckets)


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_rate_limit_middleware(bucket: _TokenBucket):
    """aiohttp middleware that enforces per-IP rate limits."""

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        ip = request.remote or "unknown"
        if not bucket.allow(ip):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_cors_middleware(origins: list[str]):
    """aiohttp middleware that adds CORS headers for listed origins only."""

    allowed = set(origins) if origins else set()
    allowed.discard("*")

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin", "")
        if request.method == "OPTIONS":
            resp = web.Response(status=204)
        else:
            resp = await handler(request)

        if origin in allowed:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


def build_middlewares(cfg: APIConfig | None) -> list:
    middlewares: list = []
    if cfg is None:
        return middlewares
    if cfg.rate_limit_rpm > 0:
        middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
    if cfg.cors_origins:
        middlewares.append(_make_cors_middleware(cfg.cors_origins))
    return middlewares


# ═══════════════════════════════════════════════════════════════════
#  Server
# ═══════════════════════════════════════════════════════════════════

class APIServer:
    """Thin aiohttp wrapper around a StakingNode."""

    def __init__(
        self,
        node: StakingNode,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
    ):
        self.node = node
        self.host = host
        self.port = port
        self._api_config = api_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def make_app(self) -> web.Application:
        max_body = self._api_config.max_body_bytes if self._api_config else 65_536
        app = web.Application(
            middlewares=build_middlewares(self._api_config),
            client_max_size=max_body,
        )
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.make_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/staking", self._staking_pool)
        app.router.add_get("/staking/{address}", self._staking_info)
        app.router.add_get("/balance/{address}", self._balance)
        app.router.add_get("/events", self._events)
        app.router.add_post("/stake/deposit", self._deposit)
        app.router.add_post("/stake/withdraw", self._withdraw)
        app.router.add_post("/stake/claim", self._claim)
        app.router.add_post("/pool/fund", self._fund)

    # ── request plumbing ─────────────────────────────────────────

    async def _signed(self, request: web.Request, action: str) -> tuple[str, dict]:
        """Verify the envelope, burn its nonce, return (caller, fields)."""
        try:
            body = await request.json()
        except ValueError as exc:
            raise web.HTTPBadRequest(text="Invalid JSON body") from exc
        try:
            caller, nonce, fields = verify_request(action, body)
            self.node.nonces.consume(caller, nonce)
        except AuthError as exc:
            raise web.HTTPUnauthorized(text=str(exc)) from exc
        return caller, fields

    def _run(self, op: Callable[..., Any], *args: Any) -> Any:
        """Call a ledger operation, mapping its errors to HTTP responses."""
        try:
            return op(*args)
        except Unauthorized as exc:
            raise web.HTTPForbidden(text=str(exc)) from exc
        except TransferFailed as exc:
            raise web.HTTPConflict(text=str(exc)) from exc
        except CompensationFailed as exc:
            logger.error(f"Compensation failed: {exc}")
            raise web.HTTPInternalServerError(text="Operation could not be undone") from exc
        except InvariantViolation as exc:
            logger.error(f"Invariant violation: {exc}")
            raise web.HTTPInternalServerError(text="Ledger invariant violated") from exc
        except StakingError as exc:
            raise web.HTTPBadRequest(text=str(exc)) from exc

    # ── handlers ─────────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        return web.json_response({
            "ok": True,
            "active_stakers": self.node.ledger.active_stakers,
            "events": len(self.node.events),
        })

    async def _staking_pool(self, _request: web.Request) -> web.Response:
        """GET /staking — pool counters + tier table."""
        summary = self.node.ledger.get_pool_summary()
        summary["tiers"] = self.node.ledger.get_tier_info()
        return web.json_response(summary, dumps=_json_dumps)

    async def _staking_info(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        return web.json_response(
            self.node.ledger.get_staker_summary(address), dumps=_json_dumps,
        )

    async def _balance(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        return web.json_response(self.node.balances(address))

    async def _events(self, request: web.Request) -> web.Response:
        since = _query_int(request, "since", 0)
        if since < 0:
            raise web.HTTPBadRequest(text="since must be non-negative")
        return web.json_response({
            "since": since,
            "first": self.node.events.first_index,
            "next": len(self.node.events),
            "events": self.node.events.to_dicts(since),
        }, dumps=_json_dumps)

    async def _deposit(self, request: web.Request) -> web.Response:
        """
        POST /stake/deposit
        Body: signed envelope with {"amount": 1000}
        """
        caller, fields = await self._signed(request, "deposit")
        amount = _strict_int(fields.get("amount"), "amount")
        record = self._run(self.node.ledger.deposit, caller, amount)
        return web.json_response({
            "status": "deposited",
            "staker": caller,
            "amount": record.amount,
            "since": record.since,
        })

    async def _withdraw(self, request: web.Request) -> web.Response:
        caller, fields = await self._signed(request, "withdraw")
        amount = _strict_int(fields.get("amount"), "amount")
        reward = self._run(self.node.ledger.withdraw, caller, amount)
        return web.json_response({
            "status": "withdrawn",
            "staker": caller,
            "amount": amount,
            "reward_paid": reward,
            "remaining": self.node.ledger.get_stake(caller).amount,
        })

    async def _claim(self, request: web.Request) -> web.Response:
        caller, _fields = await self._signed(request, "claim")
        reward = self._run(self.node.ledger.claim_reward, caller)
        return web.json_response({
            "status": "claimed",
            "staker": caller,
            "reward_paid": reward,
        })

    async def _fund(self, request: web.Request) -> web.Response:
        """
        POST /pool/fund
        Body: signed envelope with {"amount": 5000}; caller must be an admin.
        """
        caller, fields = await self._signed(request, "fund")
        amount = _strict_int(fields.get("amount"), "amount")
        pool = self._run(self.node.ledger.fund_pool, caller, amount)
        return web.json_response({
            "status": "funded",
            "amount": amount,
            "reward_pool": pool,
        })
