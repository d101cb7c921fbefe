import asyncio
import base64
import logging
import os
import shlex
import uuid
from typing import Any, Awaitable, Callable

from vercel.sandbox import AsyncSandbox as Sandbox

from codeforge import config
from codeforge.environment.base import (
    MB,
    Capabilities,
    CommandOptions,
    CommandResult,
    ExecutionEnvironment,
    ProcessHandle,
    call_maybe_async,
)
from codeforge.models import get_dev_server_command, get_framework_port, get_template
from codeforge.paths import normalize_workspace_path


logger = logging.getLogger("codeforge.environment.remote")

WRITE_CHUNK_SIZE = 64
WRITE_MAX_RETRIES = 3
DEV_SERVER_POLL_INTERVAL_S = 0.5
DEV_SERVER_POLL_ATTEMPTS = 60
IGNORED_DIRS = ["node_modules", ".git", "dist", "build", ".next", ".svelte-kit"]


def _template_source(template: str) -> dict[str, Any] | None:
    """Git source for a template, configured as CODEFORGE_TEMPLATE_<NAME>."""
    key = "CODEFORGE_TEMPLATE_" + template.upper().replace("-", "_")
    url = os.getenv(key)
    return {"type": "git", "url": url} if url else None


class RemoteSandboxEnvironment(ExecutionEnvironment):
    """Cloud sandbox backed by Vercel Sandbox; full OS access, survives reconnects."""

    kind = "remote-sandbox"
    capabilities = Capabilities(
        supports_node=True,
        supports_python=True,
        supports_bash=True,
        supports_background_processes=True,
        persists_across_reconnect=True,
        max_file_size_bytes=100 * MB,
    )

    def __init__(
        self,
        sandbox: Sandbox,
        framework: str | None = None,
        template: str | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.sandbox = sandbox
        self.framework = framework
        self.template = template
        self._sleep = sleep
        self._active = True
        self._processes: dict[str, ProcessHandle] = {}
        self._waiters: set[asyncio.Task] = set()

    @classmethod
    async def create(
        cls,
        framework: str,
        template: str | None = None,
        runtime: str = "node22",
    ) -> "RemoteSandboxEnvironment":
        template = template or get_template(framework)
        kwargs: dict[str, Any] = {
            "timeout": config.SANDBOX_TIMEOUT_MS,
            "runtime": runtime,
            "ports": [get_framework_port(framework)],
        }
        source = _template_source(template)
        if source:
            kwargs["source"] = source
        sandbox = await Sandbox.create(**kwargs)
        logger.info("sandbox[%s] created template=%s", sandbox.sandbox_id, template)
        return cls(sandbox, framework=framework, template=template)

    @classmethod
    async def connect(cls, sandbox_id: str, framework: str | None = None) -> "RemoteSandboxEnvironment":
        sandbox = await Sandbox.get(sandbox_id=sandbox_id)
        logger.info("sandbox[%s] reconnected", sandbox_id)
        return cls(sandbox, framework=framework)

    @property
    def id(self) -> str:
        return self.sandbox.sandbox_id

    @property
    def cwd(self) -> str:
        return self.sandbox.sandbox.cwd

    async def _write(self, files: dict[str, str]) -> None:
        payload = [
            {"path": normalize_workspace_path(path), "content": content.encode("utf-8")}
            for path, content in files.items()
        ]
        # Chunk by 64 files and backoff retry on transient errors
        for i in range(0, len(payload), WRITE_CHUNK_SIZE):
            chunk = payload[i : i + WRITE_CHUNK_SIZE]
            attempt = 0
            while True:
                try:
                    await self.sandbox.write_files(chunk)
                    break
                except Exception as e:
                    attempt += 1
                    if attempt > WRITE_MAX_RETRIES:
                        raise
                    logger.warning(
                        "sandbox[%s] write retry %d/%d: %s", self.id, attempt, WRITE_MAX_RETRIES, str(e)
                    )
                    await self._sleep(0.25 * (2 ** (attempt - 1)))

    async def _read(self, path: str) -> str | None:
        safe = shlex.quote(normalize_workspace_path(path))
        cmd = await self.sandbox.run_command(
            "bash",
            ["-lc", f"cd {self.cwd} && if [ -f {safe} ]; then base64 {safe}; else echo '__MISSING__'; fi"],
        )
        b64 = (await cmd.stdout() or "").strip()
        if not b64 or b64 == "__MISSING__":
            return None
        return base64.b64decode(b64).decode("utf-8", errors="replace")

    async def _delete(self, path: str) -> None:
        safe = shlex.quote(normalize_workspace_path(path))
        await self.sandbox.run_command("bash", ["-lc", f"cd {self.cwd} && rm -f {safe}"])

    async def list_files(self, directory: str = ".") -> list[str]:
        rel = normalize_workspace_path(directory) or "."
        prune = " -o ".join(f"-path '*/{d}/*'" for d in IGNORED_DIRS)
        cmd = await self.sandbox.run_command(
            "bash",
            [
                "-lc",
                (
                    f"cd {self.cwd} && "
                    f"find {shlex.quote(rel)} \\( {prune} \\) -prune -o -type f -print 2>/dev/null | sort"
                ),
            ],
        )
        out = await cmd.stdout()
        files: list[str] = []
        for line in (out or "").splitlines():
            line = line.strip()
            if line.startswith("./"):
                line = line[2:]
            if line:
                files.append(line)
        return files

    async def run_command(self, command: str, options: CommandOptions | None = None) -> CommandResult:
        opts = options or CommandOptions()
        cwd = self.cwd
        if opts.cwd:
            rel = normalize_workspace_path(opts.cwd)
            cwd = f"{self.cwd}/{rel}".rstrip("/") if rel else self.cwd
        cmd = await self.sandbox.run_command_detached(
            "bash",
            ["-lc", f"cd {cwd} && {command}"],
            env=opts.env or None,
        )

        stdout: list[str] = []
        stderr: list[str] = []

        async def _collect() -> int:
            async for line in cmd.logs():
                data = line.data or ""
                if getattr(line, "stream", "stdout") == "stderr":
                    stderr.append(data)
                    await call_maybe_async(opts.on_stderr, data)
                else:
                    stdout.append(data)
                    await call_maybe_async(opts.on_stdout, data)
            done = await cmd.wait()
            return getattr(done, "exit_code", None) or 0

        try:
            if opts.timeout_ms:
                exit_code = await asyncio.wait_for(_collect(), timeout=opts.timeout_ms / 1000)
            else:
                exit_code = await _collect()
        except asyncio.TimeoutError:
            logger.warning("sandbox[%s] command timed out after %dms: %s", self.id, opts.timeout_ms, command)
            try:
                await cmd.kill()
            except Exception as e:
                logger.warning("sandbox[%s] kill after timeout failed: %s", self.id, str(e))
            return CommandResult(
                stdout="".join(stdout),
                stderr="".join(stderr) + f"\nCommand timed out after {opts.timeout_ms}ms",
                exit_code=124,
            )
        return CommandResult(stdout="".join(stdout), stderr="".join(stderr), exit_code=exit_code)

    async def spawn_process(self, command: str, args: list[str] | None = None) -> ProcessHandle:
        line = " ".join([command, *[shlex.quote(a) for a in (args or [])]])
        cmd = await self.sandbox.run_command_detached("bash", ["-lc", f"cd {self.cwd} && {line}"])
        pid = str(getattr(cmd, "cmd_id", None) or uuid.uuid4().hex[:8])

        async def _kill() -> None:
            await cmd.kill()

        handle = ProcessHandle(pid, kill=_kill)
        self._processes[pid] = handle

        async def _wait_for_exit() -> None:
            try:
                done = await cmd.wait()
                handle.notify_exit(getattr(done, "exit_code", None) or 0)
            except Exception as e:
                logger.warning("sandbox[%s] process %s wait failed: %s", self.id, pid, str(e))
                handle.notify_exit(-1)
            finally:
                self._processes.pop(pid, None)

        waiter = asyncio.create_task(_wait_for_exit())
        self._waiters.add(waiter)
        waiter.add_done_callback(self._waiters.discard)
        return handle

    async def get_server_url(self, port: int) -> str | None:
        try:
            return self.sandbox.domain(port)
        except Exception:
            return None

    def fallback_url(self, port: int) -> str:
        return f"https://{self.id}-{port}.vercel.run"

    async def _answers_locally(self, port: int) -> bool:
        cmd = await self.sandbox.run_command(
            "bash",
            ["-lc", f"curl -s -o /dev/null -w '%{{http_code}}' http://localhost:{port} || echo 000"],
        )
        code = (await cmd.stdout() or "").strip()[-3:]
        return code.isdigit() and 200 <= int(code) < 400

    async def start_dev_server(self, framework: str) -> str:
        """Start the framework dev server and wait for it to answer locally.

        Polls every 500ms for up to 60 attempts; if the server never answers the
        deterministic sandbox URL is returned instead of failing.
        """
        port = get_framework_port(framework)
        if await self._answers_locally(port):
            return await self.get_server_url(port) or self.fallback_url(port)

        await self.spawn_process(get_dev_server_command(framework))
        logger.info("sandbox[%s] dev server starting on port %d", self.id, port)
        for _ in range(DEV_SERVER_POLL_ATTEMPTS):
            await self._sleep(DEV_SERVER_POLL_INTERVAL_S)
            try:
                if await self._answers_locally(port):
                    return await self.get_server_url(port) or self.fallback_url(port)
            except Exception as e:
                logger.debug("sandbox[%s] readiness check failed: %s", self.id, str(e))
        logger.warning("sandbox[%s] dev server not ready, using fallback URL", self.id)
        return self.fallback_url(port)

    async def dispose(self) -> None:
        if not self._active:
            return
        self._active = False
        for waiter in list(self._waiters):
            waiter.cancel()
        try:
            await self.sandbox.stop()
        except Exception as e:
            logger.warning("sandbox[%s] stop failed: %s", self.id, str(e))
        try:
            await self.sandbox.client.aclose()
        except Exception as e:
            logger.warning("sandbox[%s] client close failed: %s", self.id, str(e))

    def is_active(self) -> bool:
        return self._active
