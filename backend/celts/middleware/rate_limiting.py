import json
import logging
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Iterable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from ..core.config import settings
from ..core.exceptions import RateLimitError
from ..utils.request_info import get_client_ip

logger = logging.getLogger(__name__)

# proctoring endpoints sharing one per-IP budget
RATE_LIMITED_SUFFIXES = ("/security/session/start", "/security/exam/start", "/security/violation")


class SlidingWindowStore:
    """Per-key request timestamps kept in process memory."""

    def __init__(self):
        self._lock = threading.Lock()
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._last_sweep = 0.0

    def __len__(self) -> int:
        return len(self._hits)

    def hit(self, key: str, limit: int, window_seconds: float, now: Optional[float] = None) -> Dict[str, float]:
        now = now if now is not None else time.time()
        window_start = now - window_seconds
        with self._lock:
            # keys of clients that went quiet are dropped once per window
            if now - self._last_sweep >= window_seconds:
                self._sweep(window_start)
                self._last_sweep = now
            hits = self._hits[key]
            while hits and hits[0] <= window_start:
                hits.popleft()
            if len(hits) >= limit:
                retry_after = max(1, int(hits[0] + window_seconds - now) + 1)
                return {"allowed": False, "remaining": 0, "retry_after": retry_after}
            hits.append(now)
            return {"allowed": True, "remaining": limit - len(hits), "retry_after": 0}

    def _sweep(self, window_start: float):
        expired = [key for key, hits in self._hits.items() if not hits or hits[-1] <= window_start]
        for key in expired:
            del self._hits[key]

    def clear(self):
        with self._lock:
            self._hits.clear()
            self._last_sweep = 0.0


rate_limit_store = SlidingWindowStore()


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Limits the proctoring write endpoints to N requests per window per client IP."""

    def __init__(
        self,
        app,
        max_requests: Optional[int] = None,
        window_seconds: Optional[float] = None,
        suffixes: Iterable[str] = RATE_LIMITED_SUFFIXES,
        store: SlidingWindowStore = rate_limit_store,
    ):
        super().__init__(app)
        self.max_requests = max_requests or settings.security_rate_limit_requests
        self.window_seconds = window_seconds or settings.security_rate_limit_window_seconds
        self.suffixes = tuple(suffixes)
        self.store = store

    def _is_limited(self, path: str) -> bool:
        return path.rstrip("/").endswith(self.suffixes)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.method != "POST" or not self._is_limited(request.url.path):
            return await call_next(request)

        client_ip = get_client_ip(request)
        result = self.store.hit(client_ip, self.max_requests, self.window_seconds)

        if not result["allowed"]:
            logger.warning(f"Rate limit exceeded for {client_ip} on {request.url.path}")
            error = RateLimitError("Too many requests. Please try again later.", code="RATE_LIMITED")
            response = Response(
                content=json.dumps(error.to_dict()),
                status_code=error.status_code,
                media_type="application/json",
            )
            response.headers["Retry-After"] = str(result["retry_after"])
            response.headers["X-RateLimit-Limit"] = str(self.max_requests)
            response.headers["X-RateLimit-Remaining"] = "0"
            return response

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(result["remaining"])
        return response
