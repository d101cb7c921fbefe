import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from codeforge import config
from codeforge.environment.base import EnvironmentKind, ExecutionEnvironment
from codeforge.environment.browser import BrowserEnvironment, BrowserRuntime
from codeforge.environment.memory import MemoryEnvironment
from codeforge.environment.remote import RemoteSandboxEnvironment
from codeforge.errors import EnvironmentProvisioningError
from codeforge.models import DEFAULT_FRAMEWORK, get_template


logger = logging.getLogger("codeforge.environment.registry")

PROVISION_MAX_ATTEMPTS = 3
PROVISION_MAX_BACKOFF_MS = 10_000

Factory = Callable[[str, str], Awaitable[ExecutionEnvironment]]
Connector = Callable[[str, str | None], Awaitable[ExecutionEnvironment]]


async def _create_remote(framework: str, template: str) -> ExecutionEnvironment:
    return await RemoteSandboxEnvironment.create(framework, template=template)


async def _connect_remote(env_id: str, framework: str | None) -> ExecutionEnvironment:
    return await RemoteSandboxEnvironment.connect(env_id, framework=framework)


class EnvironmentRegistry:
    """Cache of live execution environments keyed by id.

    Entries expire a fixed TTL after they were stored. Each entry carries a
    timer that disposes and drops it on expiry; lookups, ``create`` and
    ``connect`` also sweep expired entries. The cache only avoids reconnects:
    a remote sandbox that outlives its entry can be reached again via
    ``connect``.
    """

    def __init__(
        self,
        ttl_seconds: float = config.ENV_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        factories: dict[str, Factory] | None = None,
        connector: Connector | None = None,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sleep = sleep
        self._entries: dict[str, tuple[ExecutionEnvironment, float]] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._expiring: set[asyncio.Task] = set()
        self._factories: dict[str, Factory] = {"remote-sandbox": _create_remote}
        self._factories.update(factories or {})
        self._connector: Connector = connector or _connect_remote

    def __len__(self) -> int:
        return len(self._entries)

    def put(self, env: ExecutionEnvironment) -> ExecutionEnvironment:
        self._cancel_timer(env.id)
        self._entries[env.id] = (env, self._clock() + self.ttl_seconds)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; lookups and sweeps still enforce the TTL
            return env
        self._timers[env.id] = loop.call_later(self.ttl_seconds, self._expire, env.id)
        return env

    def _cancel_timer(self, env_id: str) -> None:
        handle = self._timers.pop(env_id, None)
        if handle is not None:
            handle.cancel()

    def _expire(self, env_id: str) -> None:
        self._timers.pop(env_id, None)
        if env_id not in self._entries:
            return
        task = asyncio.get_running_loop().create_task(self.evict(env_id))
        self._expiring.add(task)
        task.add_done_callback(self._expiring.discard)

    async def get(self, env_id: str) -> ExecutionEnvironment | None:
        entry = self._entries.get(env_id)
        if entry is None:
            return None
        env, expires_at = entry
        if self._clock() >= expires_at or not env.is_active():
            await self.evict(env_id)
            return None
        return env

    async def evict(self, env_id: str) -> None:
        self._cancel_timer(env_id)
        entry = self._entries.pop(env_id, None)
        if entry is None:
            return
        env, _ = entry
        logger.info("environment[%s] evicted", env_id)
        try:
            await env.dispose()
        except Exception as e:
            logger.warning("environment[%s] dispose failed: %s", env_id, str(e))

    async def sweep(self) -> int:
        now = self._clock()
        expired = [eid for eid, (_, exp) in self._entries.items() if now >= exp]
        for eid in expired:
            await self.evict(eid)
        return len(expired)

    async def _provision(self, kind: EnvironmentKind, framework: str, template: str) -> ExecutionEnvironment:
        factory = self._factories.get(kind)
        if factory is None:
            raise EnvironmentProvisioningError(f"No factory registered for {kind} environments")
        last_error: Exception | None = None
        for attempt in range(1, PROVISION_MAX_ATTEMPTS + 1):
            try:
                return await factory(framework, template)
            except Exception as e:
                last_error = e
                logger.warning(
                    "provision %s (%s) attempt %d/%d failed: %s",
                    kind,
                    template,
                    attempt,
                    PROVISION_MAX_ATTEMPTS,
                    str(e),
                )
                if attempt < PROVISION_MAX_ATTEMPTS:
                    backoff_ms = min(1000 * 2 ** (attempt - 1), PROVISION_MAX_BACKOFF_MS)
                    await self._sleep(backoff_ms / 1000)
        raise EnvironmentProvisioningError(f"Failed to create {kind} environment: {last_error}")

    async def create(
        self,
        framework: str,
        kind: EnvironmentKind = "remote-sandbox",
        browser_runtime: BrowserRuntime | None = None,
    ) -> ExecutionEnvironment:
        """Provision a new environment for ``framework`` and cache it.

        Remote provisioning is retried with backoff; if the framework template
        keeps failing, the default framework template is tried once more and
        the environment is built for the default framework instead.
        """
        await self.sweep()
        if kind == "in-memory" and kind not in self._factories:
            return self.put(MemoryEnvironment(framework))
        if kind == "in-browser" and kind not in self._factories:
            if browser_runtime is None:
                raise EnvironmentProvisioningError("In-browser environment requires a live runtime")
            return self.put(BrowserEnvironment(browser_runtime, framework))

        template = get_template(framework)
        try:
            env = await self._provision(kind, framework, template)
        except EnvironmentProvisioningError:
            default_template = get_template(DEFAULT_FRAMEWORK)
            if template == default_template:
                raise
            logger.warning(
                "falling back to %s template, framework %s -> %s", default_template, framework, DEFAULT_FRAMEWORK
            )
            env = await self._provision(kind, DEFAULT_FRAMEWORK, default_template)
            env.framework = DEFAULT_FRAMEWORK
        return self.put(env)

    async def connect(self, env_id: str, framework: str | None = None) -> ExecutionEnvironment:
        """Return the cached instance for ``env_id`` or re-establish a connection."""
        await self.sweep()
        cached = await self.get(env_id)
        if cached is not None:
            return cached
        try:
            env = await self._connector(env_id, framework)
        except Exception as e:
            raise EnvironmentProvisioningError(f"Failed to connect to environment {env_id}: {e}") from e
        return self.put(env)

    async def close(self) -> None:
        for env_id in list(self._entries):
            await self.evict(env_id)
        if self._expiring:
            await asyncio.gather(*self._expiring, return_exceptions=True)

    async def __aenter__(self) -> "EnvironmentRegistry":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
