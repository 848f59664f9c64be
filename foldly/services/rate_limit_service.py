import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, DefaultDict, List, Optional

from foldly.config import config
from foldly.logger import get_logger

logger = get_logger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    blocked: bool


@dataclass
class _Entry:
    attempts: List[float] = field(default_factory=list)
    blocked_until: Optional[float] = None


class RateLimiter:
    """Sliding-window limiter. Exceeding the window blocks the key for
    ``block_seconds`` on top of dropping the request."""

    def __init__(
            self,
            limit: int = config.LINK_RATE_LIMIT,
            window_seconds: float = config.LINK_RATE_WINDOW_SEC,
            block_seconds: float = config.RATE_BLOCK_SEC,
            clock: Callable[[], float] = time.time
    ):
        self.limit = limit
        self.window = window_seconds
        self.block = block_seconds
        self.clock = clock
        self._entries: DefaultDict[str, _Entry] = defaultdict(_Entry)

    def check(self, key: str) -> RateLimitResult:
        now = self.clock()
        entry = self._entries[key]

        if entry.blocked_until and entry.blocked_until > now:
            logger.warning("Rate limit block active for %s", key)
            return RateLimitResult(False, 0, entry.blocked_until, True)

        window_start = now - self.window
        entry.attempts = [t for t in entry.attempts if t > window_start]

        if len(entry.attempts) >= self.limit:
            entry.blocked_until = now + self.block
            logger.warning("Rate limit exceeded for %s (%d in %ss)", key, len(entry.attempts), self.window)
            return RateLimitResult(False, 0, entry.blocked_until, True)

        entry.blocked_until = None
        entry.attempts.append(now)
        return RateLimitResult(
            allowed=True,
            remaining=self.limit - len(entry.attempts),
            reset_at=entry.attempts[0] + self.window,
            blocked=False,
        )


def link_creation_key(user_id: str) -> str:
    return f"link-create:{user_id}"
