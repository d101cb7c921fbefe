import asyncio
import logging
import shlex
import time
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from codeforge.environment.base import (
    MB,
    Capabilities,
    CommandOptions,
    CommandResult,
    ExecutionEnvironment,
    ProcessHandle,
    call_maybe_async,
)
from codeforge.models import get_dev_server_command, get_framework_port
from codeforge.paths import normalize_workspace_path


logger = logging.getLogger("codeforge.environment.browser")

SERVER_POLL_INTERVAL_S = 0.5
SERVER_POLL_ATTEMPTS = 60


class BrowserProcess(Protocol):
    def output(self) -> AsyncIterator[str]: ...

    async def wait(self) -> int: ...

    async def kill(self) -> None: ...


class BrowserRuntime(Protocol):
    """Bridge to a runtime already booted in the user's browser.

    The caller owns the bridge (typically a relay over the client connection);
    the environment never boots one itself.
    """

    async def write_file(self, path: str, content: str) -> None: ...

    async def read_file(self, path: str) -> str | None: ...

    async def remove(self, path: str) -> None: ...

    async def list_files(self, directory: str) -> list[str]: ...

    async def spawn(self, command: str, args: list[str]) -> BrowserProcess: ...

    def server_url(self, port: int) -> str | None: ...


class BrowserEnvironment(ExecutionEnvironment):
    """In-browser cooperative runtime; state lives only as long as the tab."""

    kind = "in-browser"
    capabilities = Capabilities(
        supports_node=True,
        supports_python=False,
        supports_bash=True,
        supports_background_processes=True,
        persists_across_reconnect=False,
        max_file_size_bytes=50 * MB,
    )

    def __init__(
        self,
        runtime: BrowserRuntime,
        framework: str | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if runtime is None:
            raise ValueError("BrowserEnvironment requires a live browser runtime")
        self.runtime = runtime
        self.framework = framework
        self._id = f"wc_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"
        self._active = True
        self._dev_server: ProcessHandle | None = None
        self._sleep = sleep
        self._waiters: set[asyncio.Task] = set()

    @property
    def id(self) -> str:
        return self._id

    async def _write(self, files: dict[str, str]) -> None:
        await asyncio.gather(
            *(self.runtime.write_file(normalize_workspace_path(p), c) for p, c in files.items())
        )

    async def _read(self, path: str) -> str | None:
        return await self.runtime.read_file(normalize_workspace_path(path))

    async def _delete(self, path: str) -> None:
        await self.runtime.remove(normalize_workspace_path(path))

    async def list_files(self, directory: str = ".") -> list[str]:
        return await self.runtime.list_files(normalize_workspace_path(directory) or ".")

    async def run_command(self, command: str, options: CommandOptions | None = None) -> CommandResult:
        opts = options or CommandOptions()
        line = command
        if opts.cwd:
            rel = normalize_workspace_path(opts.cwd)
            if rel:
                line = f"cd {shlex.quote(rel)} && {command}"
        process = await self.runtime.spawn("jsh", ["-c", line])
        chunks: list[str] = []

        async def _collect() -> int:
            async for data in process.output():
                chunks.append(data)
                await call_maybe_async(opts.on_stdout, data)
            return await process.wait()

        try:
            if opts.timeout_ms:
                exit_code = await asyncio.wait_for(_collect(), timeout=opts.timeout_ms / 1000)
            else:
                exit_code = await _collect()
        except asyncio.TimeoutError:
            await process.kill()
            return CommandResult(
                stdout="".join(chunks),
                stderr=f"Command timed out after {opts.timeout_ms}ms",
                exit_code=124,
            )
        # The browser shell multiplexes both streams into one output channel
        return CommandResult(stdout="".join(chunks), exit_code=exit_code)

    async def spawn_process(self, command: str, args: list[str] | None = None) -> ProcessHandle:
        process = await self.runtime.spawn(command, list(args or []))
        handle = ProcessHandle(f"wcp_{uuid.uuid4().hex[:8]}", kill=process.kill)

        async def _wait_for_exit() -> None:
            try:
                handle.notify_exit(await process.wait())
            except Exception as e:
                logger.warning("browser process %s wait failed: %s", handle.pid, str(e))
                handle.notify_exit(-1)

        waiter = asyncio.create_task(_wait_for_exit())
        self._waiters.add(waiter)
        waiter.add_done_callback(self._waiters.discard)
        return handle

    async def get_server_url(self, port: int) -> str | None:
        return self.runtime.server_url(port)

    async def start_dev_server(self, framework: str) -> str:
        port = get_framework_port(framework)
        existing = self.runtime.server_url(port)
        if existing:
            return existing
        command, *args = get_dev_server_command(framework).split()
        self._dev_server = await self.spawn_process(command, args)
        for _ in range(SERVER_POLL_ATTEMPTS):
            await self._sleep(SERVER_POLL_INTERVAL_S)
            url = self.runtime.server_url(port)
            if url:
                return url
        logger.warning("browser dev server on port %d not ready, using fallback URL", port)
        return f"webcontainer://localhost:{port}"

    async def dispose(self) -> None:
        if not self._active:
            return
        self._active = False
        for waiter in list(self._waiters):
            waiter.cancel()
        if self._dev_server is not None:
            try:
                await self._dev_server.kill()
            except Exception as e:
                logger.warning("browser dev server kill failed: %s", str(e))

    def is_active(self) -> bool:
        return self._active
