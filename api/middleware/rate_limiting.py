from __future__ import annotations

import time
from collections import defaultdict, deque
from typing import Deque, Dict

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from settings import SETTINGS

WINDOW_SECONDS = 60


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding one-minute window per caller (actor header, else client address)."""

    def __init__(self, app, requests_per_minute: int | None = None) -> None:
        super().__init__(app)
        self.requests_per_minute = requests_per_minute or SETTINGS.rate_limit_per_minute
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)

    def _caller_key(self, request: Request) -> str:
        actor = request.headers.get("X-Actor-Id", "").strip()
        if actor:
            return f"actor:{actor}"
        return f"ip:{request.client.host if request.client else 'unknown'}"

    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/health":
            return await call_next(request)
        now = time.time()
        bucket = self._hits[self._caller_key(request)]
        while bucket and now - bucket[0] > WINDOW_SECONDS:
            bucket.popleft()
        if len(bucket) >= self.requests_per_minute:
            retry_after = max(1, int(WINDOW_SECONDS - (now - bucket[0])))
            return JSONResponse({"detail": "rate_limited"}, status_code=429, headers={"Retry-After": str(retry_after)})
        bucket.append(now)
        return await call_next(request)
