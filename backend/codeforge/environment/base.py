import asyncio
import inspect
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, ConfigDict

from codeforge.errors import UnsupportedOperation
from codeforge.models import build_artifact_dirs
from codeforge.paths import is_valid_file_path, validate_path


logger = logging.getLogger("codeforge.environment")

EnvironmentKind = Literal["remote-sandbox", "in-browser", "in-memory"]

READ_BATCH_SIZE = 50
MAX_FILE_COUNT = 500
FILE_READ_TIMEOUT_MS = 5_000
MAX_READ_BYTES = 10 * 1024 * 1024
BUILD_TIMEOUT_MS = 120_000
LINT_TIMEOUT_MS = 60_000
LINT_PROBLEM_PATTERN = re.compile(r"error|✖|failed", re.IGNORECASE)
MISSING_SCRIPT_MARKER = "missing script"
MB = 1024 * 1024


class Capabilities(BaseModel):
    """What an environment can legally be asked to do."""

    model_config = ConfigDict(frozen=True)

    supports_node: bool = False
    supports_python: bool = False
    supports_bash: bool = False
    supports_background_processes: bool = False
    persists_across_reconnect: bool = False
    max_file_size_bytes: int = 10 * MB


class CommandOptions(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    cwd: str | None = None
    env: dict[str, str] | None = None
    timeout_ms: int | None = None
    on_stdout: Callable[[str], Any] | None = None
    on_stderr: Callable[[str], Any] | None = None


class CommandResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0


async def call_maybe_async(fn: Callable[..., Any] | None, *args: Any) -> None:
    if fn is None:
        return
    result = fn(*args)
    if inspect.isawaitable(result):
        await result


class ProcessHandle:
    """Handle to a spawned background process.

    ``kill`` stops it; callbacks registered with ``on_exit`` receive the exit
    code once, including callbacks registered after the process already exited.
    """

    def __init__(self, pid: str, kill: Callable[[], Awaitable[None]] | None = None) -> None:
        self.pid = pid
        self._kill = kill
        self._callbacks: list[Callable[[int], Any]] = []
        self.exit_code: int | None = None

    async def kill(self) -> None:
        if self._kill is not None:
            await self._kill()

    def on_exit(self, callback: Callable[[int], Any]) -> None:
        if self.exit_code is not None:
            callback(self.exit_code)
            return
        self._callbacks.append(callback)

    def notify_exit(self, exit_code: int) -> None:
        if self.exit_code is not None:
            return
        self.exit_code = exit_code
        for cb in self._callbacks:
            try:
                cb(exit_code)
            except Exception as e:
                logger.warning("process %s exit callback failed: %s", self.pid, str(e))
        self._callbacks.clear()


class ExecutionEnvironment(ABC):
    """Uniform interface over remote, in-browser and in-memory runtimes.

    Public file operations validate every path before touching the backend;
    subclasses implement the underscore-prefixed primitives.
    """

    kind: EnvironmentKind
    capabilities: Capabilities
    framework: str | None = None

    @property
    @abstractmethod
    def id(self) -> str: ...

    # --- backend primitives -------------------------------------------------

    @abstractmethod
    async def _write(self, files: dict[str, str]) -> None: ...

    @abstractmethod
    async def _read(self, path: str) -> str | None: ...

    @abstractmethod
    async def _delete(self, path: str) -> None: ...

    @abstractmethod
    async def list_files(self, directory: str = ".") -> list[str]: ...

    @abstractmethod
    async def run_command(self, command: str, options: CommandOptions | None = None) -> CommandResult: ...

    @abstractmethod
    async def spawn_process(self, command: str, args: list[str] | None = None) -> ProcessHandle: ...

    @abstractmethod
    async def get_server_url(self, port: int) -> str | None: ...

    @abstractmethod
    async def start_dev_server(self, framework: str) -> str: ...

    @abstractmethod
    async def dispose(self) -> None: ...

    @abstractmethod
    def is_active(self) -> bool: ...

    # --- shared behaviour ---------------------------------------------------

    def require(self, capability: str) -> None:
        """Raise UnsupportedOperation unless ``capabilities.<capability>`` is set."""
        if not getattr(self.capabilities, capability, False):
            raise UnsupportedOperation(capability, self.kind)

    def _check_size(self, path: str, content: str) -> None:
        size = len(content.encode("utf-8"))
        if size > self.capabilities.max_file_size_bytes:
            raise ValueError(
                f"File too large: {path} ({size} bytes > {self.capabilities.max_file_size_bytes})"
            )

    async def write_file(self, path: str, content: str) -> None:
        await self.write_files({path: content})

    async def write_files(self, files: dict[str, str]) -> None:
        validated: dict[str, str] = {}
        for path, content in files.items():
            p = validate_path(path)
            self._check_size(p, content)
            validated[p] = content
        if validated:
            await self._write(validated)

    async def read_file(self, path: str) -> str | None:
        return await self._read(validate_path(path))

    async def _read_with_timeout(self, path: str, timeout_ms: int) -> str | None:
        try:
            content = await asyncio.wait_for(self._read(path), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.warning("read timed out: %s", path)
            return None
        except Exception as e:
            logger.warning("read failed: %s: %s", path, str(e))
            return None
        if content is not None and len(content) > MAX_READ_BYTES:
            return None
        return content

    async def read_files(
        self,
        paths: list[str],
        batch_size: int = READ_BATCH_SIZE,
        timeout_ms: int = FILE_READ_TIMEOUT_MS,
    ) -> dict[str, str]:
        """Read many files in sequential batches of concurrent reads.

        Invalid paths, unreadable files, timed out reads and oversized files are
        omitted from the result. At most MAX_FILE_COUNT paths are considered.
        """
        valid = [p for p in paths if is_valid_file_path(p)][:MAX_FILE_COUNT]
        out: dict[str, str] = {}
        for i in range(0, len(valid), batch_size):
            batch = valid[i : i + batch_size]
            results = await asyncio.gather(
                *(self._read_with_timeout(p.strip(), timeout_ms) for p in batch)
            )
            for path, content in zip(batch, results):
                if content is not None:
                    out[path] = content
        return out

    async def delete_file(self, path: str) -> None:
        await self._delete(validate_path(path))

    async def clean_build_artifacts(self, framework: str) -> None:
        dirs = " ".join(build_artifact_dirs(framework))
        result = await self.run_command(f"rm -rf {dirs}", CommandOptions(timeout_ms=30_000))
        if result.exit_code != 0:
            logger.warning("cleaning %s failed: %s", dirs, result.stderr[:200])

    async def run_build_check(self) -> str | None:
        """Run the project build; return the failure text, or None when it passed.

        Exit code 127 means no build tooling exists, which counts as a pass.
        """
        result = await self.run_command("npm run build", CommandOptions(timeout_ms=BUILD_TIMEOUT_MS))
        if result.exit_code == 0 or result.exit_code == 127:
            return None
        output = result.stderr or result.stdout
        return f"Build failed with exit code {result.exit_code}:\n{output}"

    async def run_lint_check(self) -> str | None:
        """Run the project linter; return its output when it reports problems.

        A missing lint script or missing tooling counts as a pass, as does a
        failing exit whose output names no error.
        """
        result = await self.run_command("npm run lint", CommandOptions(timeout_ms=LINT_TIMEOUT_MS))
        output = (result.stdout + result.stderr).strip()
        if result.exit_code in (0, 127) or not output:
            return None
        if MISSING_SCRIPT_MARKER in output.lower():
            logger.info("no lint script in package.json, skipping lint")
            return None
        if LINT_PROBLEM_PATTERN.search(output):
            return output
        return None

