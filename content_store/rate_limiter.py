"""Per-client upload rate limiting on top of pyrate-limiter."""
import threading
import time
from typing import Callable, Dict, Optional

from fastapi import HTTPException, Request
from pyrate_limiter import (
    AbstractBucket,
    BucketFactory,
    BucketFullException,
    Duration,
    InMemoryBucket,
    Limiter,
    Rate,
    RateItem,
)

from content_store import config

RATE_LIMIT_MESSAGE = "Too many uploads from this IP, please try again after 5 minutes"


def _now_ms() -> int:
    return int(time.time() * 1000)


class ClientBucketFactory(BucketFactory):
    """Hands out one in-memory bucket per client address.

    Buckets whose requests have all left the window are dropped, so memory is
    bounded by the clients seen within the last window.
    """

    def __init__(self, rate: Rate, clock: Callable[[], int] = _now_ms):
        self.rate = rate
        self.clock = clock
        self.buckets: Dict[str, InMemoryBucket] = {}
        self._last_prune = clock()
        self._lock = threading.Lock()

    def wrap_item(self, name: str, weight: int = 1) -> RateItem:
        return RateItem(name, self.clock(), weight=weight)

    def get(self, item: RateItem) -> AbstractBucket:
        with self._lock:
            if item.timestamp - self._last_prune >= self.rate.interval:
                self.prune(item.timestamp)
            bucket = self.buckets.get(item.name)
            if bucket is None:
                bucket = InMemoryBucket([self.rate])
                self.buckets[item.name] = bucket
            return bucket

    def prune(self, now: int):
        """Drop buckets holding no request inside the window."""
        for name, bucket in list(self.buckets.items()):
            bucket.leak(now)
            if bucket.count() == 0:
                del self.buckets[name]
        self._last_prune = now


class UploadRateLimiter:
    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Optional[Callable[[], int]] = None,
    ):
        """
        Initialize the limiter with a request budget per client and time window.

        Args:
            max_requests: Number of requests a client may make inside the window
            window_seconds: Length of the sliding window in seconds
            clock: Optional callable returning the current time in milliseconds
        """
        if max_requests <= 0:
            raise ValueError("Max requests must be positive")
        if window_seconds <= 0:
            raise ValueError("Window seconds must be positive")

        self._rate = Rate(max_requests, Duration.SECOND * window_seconds)
        self._clock = clock or _now_ms
        self._init_limiter()

    def _init_limiter(self):
        self._factory = ClientBucketFactory(self._rate, self._clock)
        self._limiter = Limiter(self._factory, raise_when_fail=True, max_delay=None)

    def allow(self, key: str) -> bool:
        """Record a request for ``key`` and report whether it is within budget."""
        try:
            self._limiter.try_acquire(key)
        except BucketFullException:
            return False
        return True

    @property
    def tracked_clients(self) -> int:
        return len(self._factory.buckets)

    def reset(self):
        self._init_limiter()

    async def __call__(self, request: Request):
        """FastAPI dependency guarding an endpoint."""
        client = request.client.host if request.client else "unknown"
        if not self.allow(client):
            raise HTTPException(status_code=429, detail=RATE_LIMIT_MESSAGE)


upload_limiter = UploadRateLimiter(
    max_requests=config.RATE_LIMIT_MAX_UPLOADS,
    window_seconds=config.RATE_LIMIT_WINDOW_SECONDS,
)
