import os
from typing import Any

from vercel.cache import AsyncRuntimeCache

from codeforge.context import GenerationRequest


# TTL in seconds for pending run requests
_TTL_SECONDS: int = int(os.getenv("CODEFORGE_RUN_STORE_TTL_SECONDS", "900"))
_NAMESPACE = os.getenv("CODEFORGE_RUN_STORE_NAMESPACE", "codeforge-runs")


cache = AsyncRuntimeCache(namespace=_NAMESPACE)


def _cache_key(task_id: str) -> str:
    return f"run:{task_id}"


async def set_run_request(task_id: str, request: GenerationRequest) -> None:
    """Store the request for a task id until its event stream is opened."""
    await cache.set(
        _cache_key(task_id),
        request.model_dump(mode="json"),
        {"ttl": _TTL_SECONDS, "tags": [f"run:{task_id}"]},
    )


async def get_run_request(task_id: str) -> GenerationRequest | None:
    val: Any = await cache.get(_cache_key(task_id))
    if not isinstance(val, dict):
        return None
    return GenerationRequest.model_validate(val)
