import itertools
import time

from codeforge.environment.base import (
    MB,
    Capabilities,
    CommandOptions,
    CommandResult,
    ExecutionEnvironment,
    ProcessHandle,
)
from codeforge.paths import normalize_workspace_path


_counter = itertools.count(1)

PENDING_SERVER_URL = "webcontainer://pending"


class MemoryEnvironment(ExecutionEnvironment):
    """Dict-backed stub that records commands instead of running them.

    Used for planning runs and tests; the caller is expected to replay
    ``pending_commands`` in a real runtime.
    """

    kind = "in-memory"
    capabilities = Capabilities(max_file_size_bytes=10 * MB)

    def __init__(self, framework: str | None = None, files: dict[str, str] | None = None) -> None:
        self.framework = framework
        self._id = f"memory-{int(time.time() * 1000)}-{next(_counter)}"
        self._files: dict[str, str] = {}
        self.pending_commands: list[str] = []
        self._active = True
        for path, content in (files or {}).items():
            self._files[normalize_workspace_path(path)] = content

    @property
    def id(self) -> str:
        return self._id

    async def _write(self, files: dict[str, str]) -> None:
        for path, content in files.items():
            self._files[normalize_workspace_path(path)] = content

    async def _read(self, path: str) -> str | None:
        return self._files.get(normalize_workspace_path(path))

    async def _delete(self, path: str) -> None:
        self._files.pop(normalize_workspace_path(path), None)

    async def list_files(self, directory: str = ".") -> list[str]:
        prefix = normalize_workspace_path(directory)
        if not prefix:
            return sorted(self._files)
        return sorted(p for p in self._files if p == prefix or p.startswith(f"{prefix}/"))

    async def run_command(self, command: str, options: CommandOptions | None = None) -> CommandResult:
        self.pending_commands.append(command)
        return CommandResult(stdout="", stderr="", exit_code=0)

    async def spawn_process(self, command: str, args: list[str] | None = None) -> ProcessHandle:
        line = " ".join([command, *(args or [])])
        self.pending_commands.append(line)
        handle = ProcessHandle(f"memory-proc-{next(_counter)}")
        handle.notify_exit(0)
        return handle

    async def get_server_url(self, port: int) -> str | None:
        return None

    async def start_dev_server(self, framework: str) -> str:
        return PENDING_SERVER_URL

    async def dispose(self) -> None:
        self._active = False
        self._files.clear()
        self.pending_commands.clear()

    def is_active(self) -> bool:
        return self._active
