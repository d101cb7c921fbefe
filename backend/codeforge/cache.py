import hashlib
import logging
import time
from typing import Any, Awaitable, Callable

from codeforge import config


logger = logging.getLogger("codeforge.cache")


def prompt_key(namespace: str, prompt: str, prefix_chars: int = 200) -> str:
    """Cache key from a hash of the first ``prefix_chars`` characters of a prompt."""
    digest = hashlib.sha256((prompt or "")[:prefix_chars].encode("utf-8")).hexdigest()
    return f"{namespace}:{digest}"


class ResponseCache:
    """In-process TTL cache for model responses, shared across runs."""

    def __init__(
        self,
        ttl_seconds: float = config.CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries[key] = (value, self._clock() + ttl)

    async def get_or_compute(
        self, key: str, compute: Callable[[], Awaitable[Any]], ttl_seconds: float | None = None
    ) -> Any:
        cached = self.get(key)
        if cached is not None:
            logger.debug("cache hit %s", key)
            return cached
        value = await compute()
        if value is not None:
            self.set(key, value, ttl_seconds)
        return value

    def clear(self) -> None:
        self._entries.clear()
