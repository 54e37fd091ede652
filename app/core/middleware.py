import logging
import time
from typing import Dict, List, Optional, Tuple
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60

class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding one-minute window per client IP and route family.
    In-memory, so limits are per process. Keys with no hit inside the
    window are swept at most once per window.
    """

    def __init__(self, app, limit_per_minute: int = 60, path_limits: Optional[Dict[str, int]] = None):
        super().__init__(app)
        self.limit = limit_per_minute
        # Path fragment -> stricter limit, e.g. {"/kyc/webhook/": 300}
        self.path_limits = path_limits or {}
        self.requests: Dict[Tuple[str, str], List[float]] = {}
        self._last_sweep = 0.0

    def _limit_for(self, path: str):
        for fragment, limit in self.path_limits.items():
            if fragment in path:
                return fragment, limit
        return "*", self.limit

    def _hit(self, key: Tuple[str, str], limit: int, now: float) -> bool:
        """Record a request for key. False when the window is already full."""
        hits = [t for t in self.requests.pop(key, []) if now - t < WINDOW_SECONDS]
        if len(hits) >= limit:
            self.requests[key] = hits
            return False
        hits.append(now)
        self.requests[key] = hits
        return True

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < WINDOW_SECONDS:
            return
        self._last_sweep = now
        stale = [key for key, hits in self.requests.items() if not hits or now - hits[-1] >= WINDOW_SECONDS]
        for key in stale:
            del self.requests[key]

    async def dispatch(self, request: Request, call_next):
        client_ip = request.client.host if request.client else "unknown"
        now = time.time()
        self._sweep(now)

        bucket, limit = self._limit_for(request.url.path)
        if not self._hit((client_ip, bucket), limit, now):
            logger.warning(f"[RateLimit] {client_ip} exceeded {limit}/min on {request.url.path}")
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests. Please try again later."}
            )

        return await call_next(request)
