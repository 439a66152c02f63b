"""
Request-level protections: rate limiting, payload size limit, security
headers and logging of suspicious requests.
"""
import logging
import re
import time
from collections import deque
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from config import settings
from errors import error_body

logger = logging.getLogger(__name__)

RATE_LIMIT_EXEMPT_PATHS = {"/health"}

SUSPICIOUS_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"<script",
        r"union.*select",
        r"exec.*xp_",
        r"javascript:",
        r"vbscript:",
        r"onload=",
        r"onerror=",
    )
]

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "X-XSS-Protection": "0",
}


class SlidingWindowLimiter:
    """Counts events per key over a sliding time window"""

    # Past this many tracked keys, record() drops every expired one
    SWEEP_THRESHOLD = 10_000

    def __init__(self, max_events: int, window_seconds: int):
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._events: dict[str, deque] = {}

    def __len__(self) -> int:
        return len(self._events)

    def _prune(self, key: str, now: float) -> deque:
        events = self._events.get(key)
        if events is None:
            return deque()
        while events and events[0] <= now - self.window_seconds:
            events.popleft()
        if not events:
            del self._events[key]
        return events

    def sweep(self, now: Optional[float] = None) -> None:
        now = time.monotonic() if now is None else now
        for key in list(self._events):
            self._prune(key, now)

    def retry_after(self, key: str, now: Optional[float] = None) -> int:
        """Seconds until `key` may act again, 0 if it is not limited"""
        now = time.monotonic() if now is None else now
        events = self._prune(key, now)
        if len(events) < self.max_events:
            return 0
        return max(1, int(events[0] + self.window_seconds - now))

    def record(self, key: str, now: Optional[float] = None) -> None:
        now = time.monotonic() if now is None else now
        if len(self._events) >= self.SWEEP_THRESHOLD:
            self.sweep(now)
        self._prune(key, now)
        self._events.setdefault(key, deque()).append(now)

    def hit(self, key: str, now: Optional[float] = None) -> int:
        """Record an event unless limited; returns retry_after (0 means allowed)"""
        now = time.monotonic() if now is None else now
        wait = self.retry_after(key, now)
        if not wait:
            self.record(key, now)
        return wait

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._events.clear()
        else:
            self._events.pop(key, None)


general_limiter = SlidingWindowLimiter(settings.RATE_LIMIT_REQUESTS, settings.RATE_LIMIT_WINDOW_SECONDS)
# Only failed logins are recorded here
login_limiter = SlidingWindowLimiter(settings.LOGIN_RATE_LIMIT_REQUESTS, settings.RATE_LIMIT_WINDOW_SECONDS)


def client_key(request: Request) -> str:
    """Client IP for rate limiting; X-Forwarded-For is only honoured behind a trusted proxy"""
    if settings.TRUST_PROXY:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def is_suspicious(text: str) -> bool:
    return any(pattern.search(text) for pattern in SUSPICIOUS_PATTERNS)


def _too_many_requests(message: str, retry_after: int) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=error_body(message),
        headers={"Retry-After": str(retry_after)},
    )


def install_security_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        if request.method == "OPTIONS" or request.url.path in RATE_LIMIT_EXEMPT_PATHS:
            return await call_next(request)
        wait = general_limiter.hit(client_key(request))
        if wait:
            logger.warning(f"Rate limit exceeded for {client_key(request)} on {request.url.path}")
            return _too_many_requests("Too many requests. Try again later.", wait)
        return await call_next(request)

    @app.middleware("http")
    async def payload_size_limit(request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > settings.max_upload_size_bytes:
            return JSONResponse(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                content=error_body("Payload too large", {"max_size": f"{settings.MAX_UPLOAD_SIZE_MB}MB"}),
            )
        return await call_next(request)

    @app.middleware("http")
    async def suspicious_request_logger(request: Request, call_next):
        target = f"{request.url.path}?{request.url.query}" if request.url.query else request.url.path
        if is_suspicious(target):
            logger.warning(
                f"Suspicious request from {client_key(request)}: {request.method} {target} "
                f"(User-Agent: {request.headers.get('user-agent', 'unknown')})"
            )
        return await call_next(request)
