import logging
import math
import time
from collections import OrderedDict, deque
from contextlib import asynccontextmanager
from threading import Lock
from typing import AsyncIterator, Callable, Deque, Dict, Iterable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from .errors import AdmissionRejected, ConcurrencyLimitExceeded, PayloadTooLarge, RateLimitExceeded

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"


def client_identity(request: Request) -> str:
    """First X-Forwarded-For entry if present, else the peer address."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_CLIENT


class RateLimiter:
    """
    In-memory sliding window rate limiter.

    Keeps the timestamps of each client's recent requests. Clients are held
    in least-recently-used order. Once more than ``max_clients`` are tracked,
    clients whose windows have expired are dropped first, then the least
    recently used.
    """

    def __init__(
        self,
        max_requests: int = 60,
        window_seconds: float = 60.0,
        max_clients: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_clients = max_clients
        self._clock = clock
        self._requests: "OrderedDict[str, Deque[float]]" = OrderedDict()
        self._lock = Lock()

    def _window(self, identifier: str, now: float) -> Deque[float]:
        window = self._requests.get(identifier)
        if window is None:
            window = deque()
            self._requests[identifier] = window
            if len(self._requests) > self.max_clients:
                self._drop_expired(now, keep=identifier)
            while len(self._requests) > self.max_clients:
                self._requests.popitem(last=False)
        else:
            self._requests.move_to_end(identifier)
        cutoff = now - self.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()
        return window

    def is_allowed(self, identifier: str) -> bool:
        with self._lock:
            now = self._clock()
            window = self._window(identifier, now)
            if len(window) >= self.max_requests:
                return False
            window.append(now)
            return True

    def remaining(self, identifier: str) -> int:
        with self._lock:
            window = self._window(identifier, self._clock())
            return max(0, self.max_requests - len(window))

    def reset_after(self, identifier: str) -> int:
        """Seconds until the oldest request in the window expires."""
        with self._lock:
            now = self._clock()
            window = self._window(identifier, now)
            if not window:
                return 0
            return max(0, math.ceil(window[0] + self.window_seconds - now))

    def _drop_expired(self, now: float, keep: Optional[str] = None) -> None:
        cutoff = now - self.window_seconds
        stale = [
            key
            for key, window in self._requests.items()
            if key != keep and (not window or window[-1] <= cutoff)
        ]
        for key in stale:
            del self._requests[key]

    def cleanup(self) -> None:
        """Drop clients whose windows have fully expired."""
        with self._lock:
            self._drop_expired(self._clock())

    def __len__(self) -> int:
        return len(self._requests)


class ConcurrencyLimiter:
    """
    Per-client count of in-flight requests.

    Entries are removed as soon as a client's count returns to zero, so the
    mapping only ever holds clients with work in progress.
    """

    def __init__(self, max_in_flight: int = 2):
        self.max_in_flight = max_in_flight
        self._active: Dict[str, int] = {}
        self._lock = Lock()

    def try_acquire(self, identifier: str) -> bool:
        with self._lock:
            current = self._active.get(identifier, 0)
            if current >= self.max_in_flight:
                return False
            self._active[identifier] = current + 1
            return True

    def release(self, identifier: str) -> None:
        with self._lock:
            current = self._active.get(identifier, 0)
            if current <= 1:
                self._active.pop(identifier, None)
            else:
                self._active[identifier] = current - 1

    def active(self, identifier: str) -> int:
        with self._lock:
            return self._active.get(identifier, 0)

    def __len__(self) -> int:
        return len(self._active)


class AdmissionGuard:
    """
    Combined rate and concurrency admission for the resize pipeline.

    The rate check runs first, so a request turned away for concurrency still
    counts against the client's window.
    """

    def __init__(self, rate_limiter: RateLimiter, concurrency: ConcurrencyLimiter):
        self.rate_limiter = rate_limiter
        self.concurrency = concurrency

    def _check(self, identifier: str) -> None:
        if not self.rate_limiter.is_allowed(identifier):
            raise RateLimitExceeded(retry_after=self.rate_limiter.reset_after(identifier))
        if not self.concurrency.try_acquire(identifier):
            raise ConcurrencyLimitExceeded()

    def admit(self, identifier: str) -> bool:
        try:
            self._check(identifier)
        except AdmissionRejected:
            return False
        return True

    def release(self, identifier: str) -> None:
        self.concurrency.release(identifier)

    @asynccontextmanager
    async def slot(self, identifier: str) -> AsyncIterator[None]:
        """
        Hold one concurrency slot for the duration of the block.

        Raises:
            RateLimitExceeded: The client used up its request window
            ConcurrencyLimitExceeded: The client already has the maximum
                number of requests in flight
        """
        self._check(identifier)
        try:
            yield
        finally:
            self.release(identifier)

    def rate_limit_headers(self, identifier: str) -> Dict[str, str]:
        return {
            "RateLimit-Limit": str(self.rate_limiter.max_requests),
            "RateLimit-Remaining": str(self.rate_limiter.remaining(identifier)),
            "RateLimit-Reset": str(self.rate_limiter.reset_after(identifier)),
        }


class AdmissionMiddleware(BaseHTTPMiddleware):
    """
    Applies the admission guard to the guarded paths before any body parsing.

    Rejected requests get a 429 without reaching the route handler, and a
    declared Content-Length above ``max_body_bytes`` gets a 413 before a single
    body byte is read. Admitted requests release their slot when the handler
    finishes, whatever the outcome.
    """

    def __init__(
        self,
        app: ASGIApp,
        guard: AdmissionGuard,
        paths: Iterable[str] = ("/resize",),
        max_body_bytes: Optional[int] = None,
    ):
        super().__init__(app)
        self.guard = guard
        self.paths = frozenset(paths)
        self.max_body_bytes = max_body_bytes

    def _check_declared_length(self, request: Request) -> None:
        if self.max_body_bytes is None:
            return
        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.max_body_bytes:
            raise PayloadTooLarge(f"Request body exceeds the {self.max_body_bytes} byte limit")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path not in self.paths or request.method == "OPTIONS":
            return await call_next(request)

        identifier = client_identity(request)
        request.state.client_id = identifier
        try:
            async with self.guard.slot(identifier):
                self._check_declared_length(request)
                response = await call_next(request)
        except (AdmissionRejected, PayloadTooLarge) as exc:
            logger.warning("Rejected request from %s: %s", identifier, exc.message)
            headers = self.guard.rate_limit_headers(identifier)
            if isinstance(exc, RateLimitExceeded):
                headers["Retry-After"] = str(exc.retry_after)
            return JSONResponse({"detail": exc.message}, status_code=exc.status_code, headers=headers)

        response.headers.update(self.guard.rate_limit_headers(identifier))
        return response


def build_admission_guard(
    max_requests: int,
    window_seconds: float,
    max_concurrent: int,
    max_clients: int,
    clock: Optional[Callable[[], float]] = None,
) -> AdmissionGuard:
    rate_limiter = RateLimiter(
        max_requests=max_requests,
        window_seconds=window_seconds,
        max_clients=max_clients,
        clock=clock or time.monotonic,
    )
    return AdmissionGuard(rate_limiter, ConcurrencyLimiter(max_in_flight=max_concurrent))
