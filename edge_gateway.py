"""Edge Gateway – health-aware reverse proxy with caching and rate limiting.

Inbound HTTP traffic is admitted per client through a sliding-window rate
limiter, served from the response cache when possible, and otherwise
forwarded to the best backend: a healthy one in the client's region first,
then the highest-priority healthy one.  WebSocket upgrades are handed to the
session manager in :mod:`ws_sessions`, which keeps connections alive with
ping/pong envelopes.

Operational features:
- Two-tier backend health (periodic probes + fail-fast trip on forward errors)
- Deterministic geo/priority routing with an explicit degraded mode
- Per-client sliding windows with striped locks (no over-admission)
- Best-effort response cache behind an injectable storage backend
- Credential stripping on the edge → backend hop
- RFC 7807 Problem Details error responses
- JSON ``/health`` and ``/metrics`` read models (+ Prometheus text)
- Structured logging with request IDs
- Periodic maintenance loop (health refresh + rate-limit cleanup)
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import sys
import threading
import time
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol
from urllib.parse import urlsplit

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field, ValidationError, field_validator

from ws_sessions import SessionDecodeError, SessionManager

# ── Logging ───────────────────────────────────────────────────────────────────────────

LOG = logging.getLogger("edge-gateway")

# ── Version ───────────────────────────────────────────────────────────────────────────

__version__ = "1.0.0"

# ── Routing tables ────────────────────────────────────────────────────────────────────

DEFAULT_COUNTRY = "US"
DEFAULT_REGION = "us-east"
UNKNOWN_CLIENT = "unknown"
HTTP_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

COUNTRY_REGIONS: dict[str, str] = {
    "US": "us-east",
    "CA": "us-east",
    "GB": "eu-west",
    "DE": "eu-west",
    "FR": "eu-west",
    "JP": "ap-east",
    "CN": "ap-east",
    "AU": "ap-south",
}

# Request headers that never leave the edge towards a backend.
CREDENTIAL_HEADERS = ("cookie", "authorization")
HOP_BY_HOP_HEADERS = (
    "host", "content-length", "transfer-encoding",
    "connection", "keep-alive", "upgrade", "proxy-connection", "te",
)
# Response headers recomputed by the edge (httpx already decoded the body).
_DROPPED_RESPONSE_HEADERS = {
    "content-encoding", "content-length", "transfer-encoding",
    "connection", "keep-alive",
}


# ── Settings ──────────────────────────────────────────────────────────────────────────


class BackendConfig(BaseModel):
    url: str = Field(min_length=8, max_length=2000)
    priority: int = Field(default=1, ge=0, le=100_000)
    region: str = Field(default=DEFAULT_REGION, min_length=1, max_length=64)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return normalize_base_url(v)

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("region must not be empty")
        return v


def _default_backends() -> list[BackendConfig]:
    return [
        BackendConfig(url="https://api.example.com", priority=1, region="us-east"),
        BackendConfig(url="https://api-backup.example.com", priority=2, region="us-west"),
    ]


@dataclass
class AppSettings:
    backends: list[BackendConfig] = field(default_factory=_default_backends)
    port: int = 8787
    log_level: str = "INFO"
    ws_keepalive_seconds: float = 30.0
    ws_timeout_seconds: float = 60.0
    ws_max_connections: int = 1000
    ws_max_missed_pongs: int = 2
    cache_ttl_seconds: int = 300
    cache_bypass_paths: list[str] = field(
        default_factory=lambda: ["/api/realtime", "/ws"]
    )
    cache_max_entries: int = 5000
    rate_limit_enabled: bool = True
    rate_limit_rpm: int = 100
    rate_limit_window_ms: int = 60_000
    opt_compression: bool = True
    opt_keep_alive: bool = True
    opt_http2: bool = False
    health_check_enabled: bool = True
    health_check_interval_seconds: float = 30.0
    health_check_timeout_seconds: float = 5.0
    forward_timeout_seconds: float = 30.0
    client_ip_header: str = "cf-connecting-ip"
    country_header: str = "cf-ipcountry"
    degraded_fallback: bool = True
    scheduler_enabled: bool = True
    max_request_body_bytes: int = 10 * 1024 * 1024  # 10 MB


# ── Custom Exceptions ───────────────────────────────────────────────────────────────


class GatewayError(Exception):
    """Base exception for errors surfaced to the client."""

    def __init__(
        self,
        detail: str,
        status_code: int = 500,
        error_type: str = "internal_error",
        headers: Optional[dict[str, str]] = None,
        **extra: Any,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code
        self.error_type = error_type
        self.headers = headers or {}
        self.extra = extra


class AdmissionDenied(GatewayError):
    def __init__(self, limit: int, retry_after: int) -> None:
        super().__init__(
            "Rate limit exceeded",
            429,
            "rate_limited",
            headers={"retry-after": str(retry_after), "x-rate-limit": str(limit)},
            limit=limit,
        )


class NoBackendConfigured(GatewayError):
    def __init__(self) -> None:
        super().__init__("No backends configured", 503, "no_backend_configured")


class NoHealthyBackend(GatewayError):
    def __init__(self) -> None:
        super().__init__("No healthy backends available", 503, "no_healthy_backend")


class ForwardError(GatewayError):
    """Forwarding to the selected backend failed before a response arrived."""

    label = "Backend error"
    kind = "backend_error"

    def __init__(self, backend_url: str, message: str) -> None:
        super().__init__(
            f"upstream error: {message}",
            502,
            self.kind,
            error=self.label,
            message=message,
            backend=backend_url,
        )
        self.backend_url = backend_url


class ForwardTimeout(ForwardError):
    label = "Backend timeout"
    kind = "backend_timeout"


class ForwardNetworkError(ForwardError):
    pass


class CacheStoreError(Exception):
    """Backing cache storage failed. Never fatal to a request."""


# ── Helpers ───────────────────────────────────────────────────────────────────────────


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def generate_request_id() -> str:
    """Generate a unique request ID for correlation."""
    return str(uuid.uuid4())


def normalize_base_url(value: str) -> str:
    """Normalize and validate a base URL."""
    url = (value or "").strip().rstrip("/")
    if not url:
        raise ValueError("url is required")
    if not (url.startswith("http://") or url.startswith("https://")):
        raise ValueError("url must start with http:// or https://")
    return url


def join_url(base: str, path: str) -> str:
    """Join base URL and path safely."""
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


def region_for_country(country: Optional[str]) -> str:
    """Map an ISO country code to a backend region."""
    code = (country or DEFAULT_COUNTRY).strip().upper()
    return COUNTRY_REGIONS.get(code, DEFAULT_REGION)


def filtered_response_headers(headers: httpx.Headers) -> list[tuple[str, str]]:
    """Upstream response headers minus the ones the edge recomputes."""
    return [
        (k.lower(), v) for k, v in headers.multi_items()
        if k.lower() not in _DROPPED_RESPONSE_HEADERS
    ]


def problem_detail(
    status: int,
    detail: str,
    error_type: str = "about:blank",
    request_id: str = "",
    headers: Optional[dict[str, str]] = None,
    **extra: Any,
) -> JSONResponse:
    """Return an RFC 7807 Problem Details JSON response."""
    body: dict[str, Any] = {
        "type": error_type,
        "status": status,
        "detail": detail,
    }
    if request_id:
        body["request_id"] = request_id
    body.update(extra)
    return JSONResponse(body, status_code=status, headers=headers)


# ── Metrics ───────────────────────────────────────────────────────────────────────────


class Metrics:
    """Process-wide monotonic counters."""

    COUNTERS = (
        "totalRequests",
        "cacheHits",
        "cacheMisses",
        "rateLimited",
        "backendErrors",
    )

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: dict[str, int] = dict.fromkeys(self.COUNTERS, 0)

    def incr(self, name: str, n: int = 1) -> None:
        with self._lock:
            self._counts[name] += n

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts[name]

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)


# ── Backend Registry ──────────────────────────────────────────────────────────────────


@dataclass
class Backend:
    """A configured backend and its two-tier health state.

    ``probed_healthy`` is owned by the health checker.  ``tripped`` is set by
    the gateway when a forward fails and is only cleared by a probe that
    started after the trip.
    """

    url: str
    priority: int
    region: str
    probed_healthy: bool = True
    tripped: bool = False
    tripped_at: float = 0.0
    last_probe_at: float = 0.0
    last_error: str = ""

    @property
    def healthy(self) -> bool:
        return self.probed_healthy and not self.tripped

    def describe(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "healthy": self.healthy,
            "priority": self.priority,
            "region": self.region,
        }


class BackendRegistry:
    """Static backend list shared by the router, health checker and gateway."""

    def __init__(
        self,
        configs: list[BackendConfig],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backends = [Backend(c.url, c.priority, c.region) for c in configs]
        self._clock = clock
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._backends)

    def all(self) -> list[Backend]:
        return list(self._backends)

    def first(self) -> Optional[Backend]:
        return self._backends[0] if self._backends else None

    def get(self, url: str) -> Optional[Backend]:
        url = url.rstrip("/")
        return next((b for b in self._backends if b.url == url), None)

    def now(self) -> float:
        return self._clock()

    def healthy(self) -> list[Backend]:
        """Healthy backends by ascending priority; ties keep registration order."""
        with self._lock:
            alive = [b for b in self._backends if b.healthy]
        return sorted(alive, key=lambda b: b.priority)

    def record_probe(
        self, backend: Backend, healthy: bool, started_at: float, error: str = ""
    ) -> None:
        with self._lock:
            was = backend.healthy
            backend.probed_healthy = healthy
            backend.last_probe_at = started_at
            backend.last_error = error
            if healthy and backend.tripped and backend.tripped_at <= started_at:
                backend.tripped = False
            now_healthy = backend.healthy
        if was != now_healthy:
            LOG.info(
                "Backend %s is now %s",
                backend.url, "healthy" if now_healthy else "unhealthy",
            )

    def trip(self, backend: Backend, reason: str = "") -> None:
        with self._lock:
            backend.tripped = True
            backend.tripped_at = self._clock()
            backend.last_error = reason
        LOG.warning("Backend %s marked unhealthy: %s", backend.url, reason)


# ── Health Checker ────────────────────────────────────────────────────────────────────


class HealthChecker:
    """Probes backends on demand. The caller owns the cadence."""

    def __init__(
        self,
        registry: BackendRegistry,
        client: httpx.AsyncClient,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._registry = registry
        self._client = client
        self._timeout = timeout_seconds
        self._log = logging.getLogger("edge-gateway.health")

    async def probe(self, backend: Backend) -> bool:
        url = join_url(backend.url, "/health")
        try:
            resp = await asyncio.wait_for(
                self._client.head(url, timeout=self._timeout), self._timeout
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            self._log.debug("Probe %s failed: %s", url, str(exc) or type(exc).__name__)
            return False
        if not resp.is_success:
            self._log.debug("Probe %s returned HTTP %d", url, resp.status_code)
        return resp.is_success

    async def refresh(self, backends: Optional[list[Backend]] = None) -> dict[str, bool]:
        """Probe backends concurrently (all by default) and record the results."""
        if backends is None:
            backends = self._registry.all()
        started = self._registry.now()
        results = await asyncio.gather(
            *(self.probe(b) for b in backends), return_exceptions=True
        )
        out: dict[str, bool] = {}
        for backend, result in zip(backends, results):
            error = ""
            if isinstance(result, BaseException):
                self._log.warning("Probe for %s raised: %s", backend.url, result)
                error = f"{type(result).__name__}: {result}"
            healthy = result is True
            self._registry.record_probe(backend, healthy, started, error)
            out[backend.url] = healthy
        return out

    def healthy_backends(self) -> list[Backend]:
        return self._registry.healthy()


# ── Rate Limiter ──────────────────────────────────────────────────────────────────────


class RateLimiter:
    """Per-client sliding-window admission control.

    Each client owns an ordered list of request timestamps (ms).  Admission
    prunes the list, decides and appends under a lock stripe chosen by the
    client key, so two concurrent admissions for the same client can never
    both observe a window below the limit.
    """

    def __init__(
        self,
        requests_per_minute: int = 100,
        window_ms: int = 60_000,
        enabled: bool = True,
        clock: Callable[[], float] = now_ms,
        stripes: int = 16,
    ) -> None:
        self.limit = requests_per_minute
        self.window_ms = window_ms
        self.enabled = enabled
        self._clock = clock
        self._windows: dict[str, list[float]] = {}
        self._locks = [threading.Lock() for _ in range(max(1, stripes))]

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.window_ms / 1000))

    @property
    def active_clients(self) -> int:
        return len(self._windows)

    def admit(self, client_id: Optional[str]) -> bool:
        if not self.enabled:
            return True
        key = client_id or UNKNOWN_CLIENT
        with self._lock_for(key):
            now = self._clock()
            cutoff = now - self.window_ms
            window = [t for t in self._windows.get(key, ()) if t > cutoff]
            if len(window) >= self.limit:
                self._windows[key] = window
                return False
            window.append(now)
            self._windows[key] = window
            return True

    def cleanup(self) -> int:
        """Drop clients whose window is empty. Returns how many were removed."""
        removed = 0
        for key in list(self._windows):
            with self._lock_for(key):
                window = self._windows.get(key)
                if window is None:
                    continue
                cutoff = self._clock() - self.window_ms
                pruned = [t for t in window if t > cutoff]
                if pruned:
                    self._windows[key] = pruned
                else:
                    del self._windows[key]
                    removed += 1
        return removed


# ── Cache ─────────────────────────────────────────────────────────────────────────────


@dataclass
class CacheEntry:
    status: int
    headers: list[tuple[str, str]]
    body: bytes
    stored_at: float


class CacheBackend(Protocol):
    """Storage capability the cache manager writes through."""

    async def get(self, key: str) -> Optional[CacheEntry]: ...

    async def put(self, key: str, entry: CacheEntry) -> None: ...

    async def has(self, key: str) -> bool: ...


class TTLCache:
    """LRU cache with TTL expiration for response caching."""

    def __init__(
        self,
        max_entries: int = 5000,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._max_entries = max_entries
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._store: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            ts, val = entry
            if self._clock() - ts > self._ttl_seconds:
                del self._store[key]
                return None
            self._store.move_to_end(key)
            return val

    async def put(self, key: str, val: Any) -> None:
        async with self._lock:
            self._store[key] = (self._clock(), val)
            self._store.move_to_end(key)
            self._evict()

    async def has(self, key: str) -> bool:
        return await self.get(key) is not None

    def _evict(self) -> None:
        now = self._clock()
        expired = [
            k for k, (ts, _) in self._store.items()
            if now - ts > self._ttl_seconds
        ]
        for k in expired:
            del self._store[k]
        while len(self._store) > self._max_entries:
            self._store.popitem(last=False)

    async def clear(self) -> None:
        async with self._lock:
            self._store.clear()

    @property
    def size(self) -> int:
        return len(self._store)


class CacheManager:
    """Cacheability rules and hit/miss accounting over a :class:`CacheBackend`."""

    def __init__(
        self,
        backend: CacheBackend,
        metrics: Metrics,
        ttl_seconds: int = 300,
        bypass_paths: Optional[list[str]] = None,
    ) -> None:
        self.backend = backend
        self._metrics = metrics
        self.ttl_seconds = ttl_seconds
        self.bypass_paths = list(bypass_paths or [])
        self._log = logging.getLogger("edge-gateway.cache")

    @staticmethod
    def cache_key(method: str, url: str) -> str:
        return f"{method.upper()} {url}"

    def should_cache(self, method: str, url: str) -> bool:
        if method.upper() != "GET":
            return False
        path = urlsplit(url).path or "/"
        return not any(path.startswith(p) for p in self.bypass_paths)

    async def lookup(self, method: str, url: str) -> Optional[CacheEntry]:
        if not self.should_cache(method, url):
            return None
        try:
            entry = await self._call("get", self.cache_key(method, url))
        except CacheStoreError as exc:
            self._log.warning("Cache lookup failed for %s: %s", url, exc)
            return None
        if entry is None:
            self._metrics.incr("cacheMisses")
            return None
        self._metrics.incr("cacheHits")
        return entry

    async def store(
        self,
        method: str,
        url: str,
        status: int,
        headers: list[tuple[str, str]],
        body: bytes,
    ) -> bool:
        if not self.should_cache(method, url) or status >= 500:
            return False
        stored_headers = [
            (k, v) for k, v in headers
            if k.lower() not in ("cache-control", "x-cache-status", "set-cookie")
        ]
        stored_headers.append(("cache-control", f"public, max-age={self.ttl_seconds}"))
        stored_headers.append(("x-cache-status", "HIT"))
        entry = CacheEntry(status, stored_headers, bytes(body), time.time())
        try:
            await self._call("put", self.cache_key(method, url), entry)
        except CacheStoreError as exc:
            self._log.warning("Cache put failed for %s: %s", url, exc)
            return False
        return True

    async def _call(self, op: str, *args: Any) -> Any:
        try:
            return await getattr(self.backend, op)(*args)
        except Exception as exc:
            raise CacheStoreError(f"{op} failed: {type(exc).__name__}: {exc}") from exc


# ── Request Optimizer ─────────────────────────────────────────────────────────────────


class RequestOptimizer:
    """Rewrites request headers on the edge → backend hop."""

    def __init__(
        self, compression: bool = True, keep_alive: bool = True, http2: bool = False
    ) -> None:
        self.compression = compression
        self.keep_alive = keep_alive
        self.http2 = http2

    def rewrite(self, headers: Any) -> httpx.Headers:
        out = httpx.Headers(headers)
        for name in CREDENTIAL_HEADERS + HOP_BY_HOP_HEADERS:
            if name in out:
                del out[name]
        if self.compression:
            out["accept-encoding"] = "gzip, deflate, br"
        # HTTP/2 forbids connection-specific headers.
        if self.keep_alive and not self.http2:
            out["connection"] = "keep-alive"
            out["keep-alive"] = "timeout=60, max=1000"
        return out


# ── Smart Router ──────────────────────────────────────────────────────────────────────


class SmartRouter:
    """Deterministic backend selection: region match, then priority."""

    def __init__(
        self,
        registry: BackendRegistry,
        degraded_fallback: bool = True,
        health: Optional[HealthChecker] = None,
    ) -> None:
        self._registry = registry
        self._healthy = health.healthy_backends if health is not None else registry.healthy
        self.degraded_fallback = degraded_fallback

    def select(self, country: Optional[str] = None) -> Optional[Backend]:
        healthy = self._healthy()
        if not healthy:
            fallback = self._registry.first()
            if fallback is None:
                return None
            if not self.degraded_fallback:
                raise NoHealthyBackend()
            LOG.warning("No healthy backends; degraded fallback to %s", fallback.url)
            return fallback
        region = region_for_country(country)
        for backend in healthy:
            if backend.region == region:
                return backend
        return healthy[0]


# ── Gateway ───────────────────────────────────────────────────────────────────────────


class EdgeGateway:
    """Owns all per-process state and runs the request pipeline."""

    def __init__(
        self,
        settings: AppSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cache_backend: Optional[CacheBackend] = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self.metrics = Metrics()
        self.registry = BackendRegistry(settings.backends)
        self.client = self._make_client()
        self.health = HealthChecker(
            self.registry, self.client, settings.health_check_timeout_seconds
        )
        self.rate_limiter = RateLimiter(
            settings.rate_limit_rpm,
            settings.rate_limit_window_ms,
            enabled=settings.rate_limit_enabled,
        )
        self.cache = CacheManager(
            cache_backend or TTLCache(settings.cache_max_entries, settings.cache_ttl_seconds),
            self.metrics,
            settings.cache_ttl_seconds,
            settings.cache_bypass_paths,
        )
        self.optimizer = RequestOptimizer(
            settings.opt_compression, settings.opt_keep_alive, settings.opt_http2
        )
        self.router = SmartRouter(self.registry, settings.degraded_fallback, health=self.health)
        self.sessions = SessionManager(
            keepalive_interval=settings.ws_keepalive_seconds,
            send_timeout=settings.ws_timeout_seconds,
            max_connections=settings.ws_max_connections,
            max_missed_pongs=settings.ws_max_missed_pongs,
        )
        self._start_time = time.time()

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            http2=self.settings.opt_http2,
            timeout=httpx.Timeout(self.settings.forward_timeout_seconds),
            transport=self._transport,
            follow_redirects=False,
        )

    async def startup(self) -> None:
        self._start_time = time.time()
        LOG.info(
            "Gateway started: backends=%d, rate_limit=%s (%d/%dms), cache_ttl=%ds",
            len(self.registry),
            self.settings.rate_limit_enabled,
            self.settings.rate_limit_rpm,
            self.settings.rate_limit_window_ms,
            self.settings.cache_ttl_seconds,
        )

    async def shutdown(self) -> None:
        LOG.info("Initiating graceful shutdown...")
        await self.sessions.close_all()
        if not self.client.is_closed:
            await self.client.aclose()
        LOG.info("Gateway shutdown complete")

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self._start_time

    def client_id_for(self, headers: Any) -> str:
        return (headers.get(self.settings.client_ip_header) or "").strip() or UNKNOWN_CLIENT

    async def run_scheduled(self) -> None:
        """Maintenance entrypoint: health refresh, then rate-limit cleanup."""
        if self.settings.health_check_enabled:
            await self.health.refresh()
        else:
            # A trip is only cleared by a probe, so tripped backends are
            # still probed when periodic checks are off.
            tripped = [b for b in self.registry.all() if b.tripped]
            if tripped:
                await self.health.refresh(tripped)
        removed = self.rate_limiter.cleanup()
        if removed:
            LOG.debug("Rate limiter dropped %d idle clients", removed)

    async def forward(
        self,
        backend: Backend,
        method: str,
        url: str,
        headers: httpx.Headers,
        body: bytes,
    ) -> httpx.Response:
        timeout = self.settings.forward_timeout_seconds
        try:
            return await asyncio.wait_for(
                self.client.request(method, url, headers=headers, content=body or None),
                timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise ForwardTimeout(backend.url, f"no response within {timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise ForwardNetworkError(
                backend.url, f"{type(exc).__name__}: {exc}"
            ) from exc

    async def proxy(self, request: Request) -> Response:
        req_id = getattr(request.state, "request_id", "")
        client_id = self.client_id_for(request.headers)
        if not self.rate_limiter.admit(client_id):
            self.metrics.incr("rateLimited")
            LOG.info("Rate limit exceeded for %s [req=%s]", client_id, req_id)
            raise AdmissionDenied(self.rate_limiter.limit, self.rate_limiter.retry_after_seconds)

        method = request.method
        url = str(request.url)
        cached = await self.cache.lookup(method, url)
        if cached is not None:
            resp = Response(content=cached.body, status_code=cached.status)
            for k, v in cached.headers:
                resp.headers.append(k, v)
            resp.headers["x-cache"] = "HIT"
            resp.headers["x-cache-hits"] = str(self.metrics.get("cacheHits"))
            return resp

        backend = self.router.select(request.headers.get(self.settings.country_header))
        if backend is None:
            raise NoBackendConfigured()

        headers = self.optimizer.rewrite(request.headers.items())
        target = join_url(backend.url, request.url.path)
        if request.url.query:
            target = f"{target}?{request.url.query}"
        body = await request.body()

        start = time.perf_counter()
        LOG.debug("Routing %s %s to %s [req=%s]", method, request.url.path, backend.url, req_id)
        try:
            up = await self.forward(backend, method, target, headers, body)
        except ForwardError as exc:
            lat = (time.perf_counter() - start) * 1000
            self.metrics.incr("backendErrors")
            self.registry.trip(backend, exc.extra.get("message", ""))
            LOG.warning(
                "Upstream error for %s via %s: %s [req=%s, lat=%.0fms]",
                request.url.path, backend.url, exc.extra.get("message"), req_id, lat,
            )
            raise
        lat = (time.perf_counter() - start) * 1000

        upstream_headers = filtered_response_headers(up.headers)
        await self.cache.store(method, url, up.status_code, upstream_headers, up.content)

        resp = Response(content=up.content, status_code=up.status_code)
        for k, v in upstream_headers:
            resp.headers.append(k, v)
        resp.headers["x-cache"] = "MISS"
        resp.headers["x-backend"] = backend.url
        resp.headers["x-latency"] = str(round(lat))
        resp.headers["x-region"] = backend.region
        resp.headers["x-cache-hits"] = str(self.metrics.get("cacheHits"))
        resp.headers["x-powered-by"] = f"edge-gateway/{__version__}"
        return resp

    def metrics_snapshot(self) -> dict[str, int]:
        snap = self.metrics.snapshot()
        snap["activeConnections"] = self.sessions.active_count
        snap["totalConnections"] = self.sessions.total_opened
        return snap

    def health_report(self) -> dict[str, Any]:
        backends = self.registry.all()
        return {
            "status": "healthy" if any(b.healthy for b in backends) else "degraded",
            "version": __version__,
            "metrics": self.metrics_snapshot(),
            "backends": [b.describe() for b in backends],
            "timestamp": now_ms(),
        }

    def metrics_report(self) -> dict[str, Any]:
        return {
            "metrics": self.metrics_snapshot(),
            "rateLimits": self.rate_limiter.active_clients,
            "timestamp": now_ms(),
        }

    def prometheus_metrics(self) -> str:
        """Generate Prometheus-compatible metrics output."""
        snap = self.metrics_snapshot()
        lines = [
            "# HELP edge_requests_total Total inbound requests",
            "# TYPE edge_requests_total counter",
            f"edge_requests_total {snap['totalRequests']}",
            "",
            "# HELP edge_cache_hits_total Cache hits",
            "# TYPE edge_cache_hits_total counter",
            f"edge_cache_hits_total {snap['cacheHits']}",
            "",
            "# HELP edge_cache_misses_total Cache misses",
            "# TYPE edge_cache_misses_total counter",
            f"edge_cache_misses_total {snap['cacheMisses']}",
            "",
            "# HELP edge_rate_limited_total Requests rejected by the rate limiter",
            "# TYPE edge_rate_limited_total counter",
            f"edge_rate_limited_total {snap['rateLimited']}",
            "",
            "# HELP edge_backend_errors_total Failed forwards",
            "# TYPE edge_backend_errors_total counter",
            f"edge_backend_errors_total {snap['backendErrors']}",
            "",
            "# HELP edge_ws_active_connections Open WebSocket sessions",
            "# TYPE edge_ws_active_connections gauge",
            f"edge_ws_active_connections {snap['activeConnections']}",
            "",
            "# HELP edge_rate_limit_clients Clients with an active window",
            "# TYPE edge_rate_limit_clients gauge",
            f"edge_rate_limit_clients {self.rate_limiter.active_clients}",
            "",
            "# HELP edge_uptime_seconds Gateway uptime",
            "# TYPE edge_uptime_seconds gauge",
            f"edge_uptime_seconds {round(self.uptime_seconds, 1)}",
            "",
            "# HELP edge_backend_healthy Backend health (1 = healthy)",
            "# TYPE edge_backend_healthy gauge",
        ]
        for b in self.registry.all():
            name = b.url.replace('"', '\\"')
            lines.append(
                f'edge_backend_healthy{{backend="{name}",region="{b.region}"}} {int(b.healthy)}'
            )
        return "\n".join(lines) + "\n"


# ── App Factory ─────────────────────────────────────────────────────────────────


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return [p.strip() for p in raw.split(",") if p.strip()]


def parse_backends(raw: str) -> list[BackendConfig]:
    """Parse the ``EDGE_BACKENDS`` JSON list."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"EDGE_BACKENDS is not valid JSON: {exc}") from exc
    if not isinstance(data, list):
        raise ValueError("EDGE_BACKENDS must be a JSON list")
    try:
        return [BackendConfig.model_validate(item) for item in data]
    except ValidationError as exc:
        raise ValueError(f"EDGE_BACKENDS entry invalid: {exc}") from exc


def load_settings() -> AppSettings:
    """Load settings from environment variables with validation."""
    raw_backends = os.getenv("EDGE_BACKENDS", "")
    backends = parse_backends(raw_backends) if raw_backends.strip() else _default_backends()
    defaults = AppSettings(backends=backends)

    settings = AppSettings(
        backends=backends,
        port=int(os.getenv("EDGE_PORT", str(defaults.port))),
        log_level=os.getenv("EDGE_LOG_LEVEL", defaults.log_level).upper(),
        ws_keepalive_seconds=max(1.0, float(os.getenv("EDGE_WS_KEEPALIVE_SECONDS", "30"))),
        ws_timeout_seconds=max(1.0, float(os.getenv("EDGE_WS_TIMEOUT_SECONDS", "60"))),
        ws_max_connections=max(1, int(os.getenv("EDGE_WS_MAX_CONNECTIONS", "1000"))),
        ws_max_missed_pongs=max(0, int(os.getenv("EDGE_WS_MAX_MISSED_PONGS", "2"))),
        cache_ttl_seconds=max(0, int(os.getenv("EDGE_CACHE_TTL_SECONDS", "300"))),
        cache_bypass_paths=_env_list("EDGE_CACHE_BYPASS_PATHS", defaults.cache_bypass_paths),
        cache_max_entries=max(1, int(os.getenv("EDGE_CACHE_MAX_ENTRIES", "5000"))),
        rate_limit_enabled=_env_bool("EDGE_RATE_LIMIT_ENABLED", True),
        rate_limit_rpm=max(1, int(os.getenv("EDGE_RATE_LIMIT_RPM", "100"))),
        rate_limit_window_ms=max(1, int(os.getenv("EDGE_RATE_LIMIT_WINDOW_MS", "60000"))),
        opt_compression=_env_bool("EDGE_OPT_COMPRESSION", True),
        opt_keep_alive=_env_bool("EDGE_OPT_KEEP_ALIVE", True),
        opt_http2=_env_bool("EDGE_OPT_HTTP2", False),
        health_check_enabled=_env_bool("EDGE_HEALTH_CHECK_ENABLED", True),
        health_check_interval_seconds=max(
            1.0, float(os.getenv("EDGE_HEALTH_CHECK_INTERVAL_SECONDS", "30"))
        ),
        health_check_timeout_seconds=max(
            0.1, float(os.getenv("EDGE_HEALTH_CHECK_TIMEOUT_SECONDS", "5"))
        ),
        forward_timeout_seconds=max(
            0.1, float(os.getenv("EDGE_FORWARD_TIMEOUT_SECONDS", "30"))
        ),
        client_ip_header=os.getenv("EDGE_CLIENT_IP_HEADER", defaults.client_ip_header).lower(),
        country_header=os.getenv("EDGE_COUNTRY_HEADER", defaults.country_header).lower(),
        degraded_fallback=_env_bool("EDGE_DEGRADED_FALLBACK", True),
        scheduler_enabled=_env_bool("EDGE_SCHEDULER_ENABLED", True),
        max_request_body_bytes=int(
            os.getenv("EDGE_MAX_REQUEST_BODY_BYTES", str(10 * 1024 * 1024))
        ),
    )

    if not raw_backends.strip():
        LOG.warning("EDGE_BACKENDS not set - using the example backends")
    if settings.ws_max_missed_pongs == 0:
        LOG.warning("EDGE_WS_MAX_MISSED_PONGS=0 - dead WebSocket peers are never dropped")

    return settings


def create_app(
    settings: Optional[AppSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    cache_backend: Optional[CacheBackend] = None,
) -> FastAPI:
    cfg = settings or load_settings()

    log_fmt = (
        "%(asctime)s %(levelname)s [%(name)s] %(message)s"
        if cfg.log_level != "DEBUG"
        else "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
    )
    logging.basicConfig(level=cfg.log_level, format=log_fmt, stream=sys.stdout)

    gateway = EdgeGateway(cfg, transport=transport, cache_backend=cache_backend)

    async def maintenance_loop() -> None:
        while True:
            try:
                await gateway.run_scheduled()
            except Exception:
                LOG.exception("Scheduled maintenance failed")
            await asyncio.sleep(cfg.health_check_interval_seconds)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await gateway.startup()
        maintenance: Optional[asyncio.Task] = None
        if cfg.scheduler_enabled:
            maintenance = asyncio.create_task(maintenance_loop())
        LOG.info("Edge Gateway v%s ready on port %s", __version__, cfg.port)
        try:
            yield
        finally:
            if maintenance is not None:
                maintenance.cancel()
                with suppress(asyncio.CancelledError):
                    await maintenance
            await gateway.shutdown()

    app = FastAPI(
        title="Edge Gateway",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = cfg
    app.state.gateway = gateway

    # Security headers middleware
    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        req_id = request.headers.get("x-request-id", "") or generate_request_id()
        request.state.request_id = req_id
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Request-ID"] = req_id
        response.headers["X-Gateway-Version"] = __version__
        return response

    # Request size limit middleware
    @app.middleware("http")
    async def body_size_middleware(request: Request, call_next):
        cl = request.headers.get("content-length", "")
        if cl.isdigit() and int(cl) > cfg.max_request_body_bytes:
            return problem_detail(413, f"Request body too large (max {cfg.max_request_body_bytes} bytes)", "request_too_large")
        return await call_next(request)

    # Outermost: every inbound request counts, whatever its outcome.
    @app.middleware("http")
    async def count_requests_middleware(request: Request, call_next):
        gateway.metrics.incr("totalRequests")
        return await call_next(request)

    # Exception handlers
    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        req_id = getattr(request.state, "request_id", "")
        return problem_detail(
            exc.status_code, exc.detail, exc.error_type, req_id,
            headers=exc.headers, **exc.extra,
        )

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        req_id = getattr(request.state, "request_id", "")
        return problem_detail(exc.status_code, str(exc.detail), request_id=req_id)

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        req_id = getattr(request.state, "request_id", "")
        LOG.exception("Unhandled error: %s [req=%s]", exc, req_id)
        return problem_detail(500, "internal server error", "internal_error", req_id)

    # Routes: introspection
    # Served for every method so they never reach a backend.
    @app.api_route("/health", methods=HTTP_METHODS)
    async def health(request: Request):
        """Gateway health with backend status and counters."""
        if request.method == "HEAD":
            return Response(status_code=200)
        return JSONResponse(gateway.health_report())

    @app.api_route("/metrics", methods=HTTP_METHODS)
    async def metrics(format: str = "json"):
        """Counters as JSON, or Prometheus text with ``?format=prometheus``."""
        if format == "prometheus":
            return Response(
                content=gateway.prometheus_metrics(),
                media_type="text/plain; version=0.0.4; charset=utf-8",
            )
        return JSONResponse(gateway.metrics_report())

    # Routes: WebSocket sessions (any path)
    @app.websocket("/{path:path}")
    async def websocket_entry(websocket: WebSocket, path: str):
        gateway.metrics.incr("totalRequests")
        await gateway.sessions.serve(websocket)

    # Routes: proxy
    @app.api_route(
        "/{path:path}",
        methods=HTTP_METHODS,
    )
    async def proxy(request: Request, path: str):
        upgrade = request.headers.get("upgrade", "").lower()
        if request.url.path == "/ws" or upgrade == "websocket":
            raise HTTPException(426, "Expected WebSocket")
        return await gateway.proxy(request)

    return app


__all__ = [
    "AdmissionDenied",
    "AppSettings",
    "Backend",
    "BackendConfig",
    "BackendRegistry",
    "CacheBackend",
    "CacheEntry",
    "CacheManager",
    "CacheStoreError",
    "EdgeGateway",
    "ForwardError",
    "ForwardNetworkError",
    "ForwardTimeout",
    "GatewayError",
    "HealthChecker",
    "Metrics",
    "NoBackendConfigured",
    "NoHealthyBackend",
    "RateLimiter",
    "RequestOptimizer",
    "SessionDecodeError",
    "SmartRouter",
    "TTLCache",
    "create_app",
    "load_settings",
    "region_for_country",
]


if __name__ == "__main__":
    s = load_settings()
    uvicorn.run(
        create_app(s),
        host="0.0.0.0",
        port=s.port,
        reload=False,
        log_level=s.log_level.lower(),
        access_log=True,
    )
