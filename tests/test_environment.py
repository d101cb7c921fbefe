"""Tests for execution environments, the environment registry and path validation."""

import asyncio
from types import SimpleNamespace

import pytest

from codeforge.environment import (
    BrowserEnvironment,
    CommandOptions,
    CommandResult,
    EnvironmentRegistry,
    MemoryEnvironment,
    RemoteSandboxEnvironment,
    select_runtime,
)
from codeforge.errors import EnvironmentProvisioningError, InvalidPathError, UnsupportedOperation
from codeforge.paths import (
    MAX_PATH_BYTES,
    absolute_workspace_path,
    is_valid_file_path,
    normalize_workspace_path,
    validate_path,
)

from conftest import FakeBrowserRuntime, FakeEnvironment, no_sleep


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestPaths:
    @pytest.mark.parametrize(
        "path",
        ["app/page.tsx", "./src/App.vue", "/home/user/app/page.tsx", "  package.json  "],
    )
    def test_valid(self, path):
        assert is_valid_file_path(path)

    @pytest.mark.parametrize(
        "path",
        ["", "   ", "../etc/passwd", "src/../../x", "/etc/passwd", "a\nb", "a\0b", None, "a" * (MAX_PATH_BYTES + 1)],
    )
    def test_invalid(self, path):
        assert not is_valid_file_path(path)
        with pytest.raises(InvalidPathError):
            validate_path(path)

    def test_invalid_path_is_value_error(self):
        with pytest.raises(ValueError):
            validate_path("../x")

    def test_normalize(self):
        assert normalize_workspace_path("/home/user/app/page.tsx") == "app/page.tsx"
        assert normalize_workspace_path("./app/page.tsx") == "app/page.tsx"
        assert normalize_workspace_path("/home/user") == ""
        assert absolute_workspace_path("app/page.tsx") == "/home/user/app/page.tsx"


class TestMemoryEnvironment:
    @pytest.mark.asyncio
    async def test_write_read_delete(self):
        env = MemoryEnvironment("nextjs")
        await env.write_files({"app/page.tsx": "page", "/home/user/lib/utils.ts": "utils"})

        assert await env.read_file("app/page.tsx") == "page"
        assert await env.read_file("lib/utils.ts") == "utils"
        assert await env.list_files("app") == ["app/page.tsx"]

        await env.delete_file("app/page.tsx")
        assert await env.read_file("app/page.tsx") is None

    @pytest.mark.asyncio
    async def test_invalid_path_rejected_before_write(self):
        env = MemoryEnvironment()
        with pytest.raises(InvalidPathError):
            await env.write_files({"ok.ts": "x", "../escape.ts": "y"})
        assert await env.list_files() == []

    @pytest.mark.asyncio
    async def test_oversized_file_rejected(self):
        env = MemoryEnvironment()
        big = "x" * (env.capabilities.max_file_size_bytes + 1)
        with pytest.raises(ValueError):
            await env.write_file("big.txt", big)

    @pytest.mark.asyncio
    async def test_read_files_skips_missing_and_invalid(self):
        env = MemoryEnvironment(files={f"src/f{i}.ts": str(i) for i in range(120)})
        paths = [f"src/f{i}.ts" for i in range(120)] + ["missing.ts", "../bad.ts"]

        contents = await env.read_files(paths, batch_size=50)

        assert len(contents) == 120
        assert contents["src/f7.ts"] == "7"
        assert "missing.ts" not in contents

    @pytest.mark.asyncio
    async def test_commands_are_recorded_not_run(self):
        env = MemoryEnvironment()
        result = await env.run_command("npm install zod")
        handle = await env.spawn_process("npm", ["run", "dev"])

        assert result.exit_code == 0
        assert env.pending_commands == ["npm install zod", "npm run dev"]
        seen = []
        handle.on_exit(seen.append)
        assert seen == [0]
        assert await env.start_dev_server("nextjs") == "webcontainer://pending"
        assert await env.get_server_url(3000) is None

    def test_require_capability(self):
        env = MemoryEnvironment()
        with pytest.raises(UnsupportedOperation):
            env.require("supports_bash")

    @pytest.mark.asyncio
    async def test_dispose(self):
        env = MemoryEnvironment(files={"a.ts": "a"})
        await env.dispose()
        assert not env.is_active()
        assert await env.list_files() == []


class TestBuildCheck:
    @pytest.mark.asyncio
    async def test_missing_build_tool_passes(self):
        env = FakeEnvironment(build_results=[CommandResult(stdout="", stderr="npm: not found", exit_code=127)])
        assert await env.run_build_check() is None

    @pytest.mark.asyncio
    async def test_failed_build_reports_output(self):
        env = FakeEnvironment(build_results=[CommandResult(stdout="", stderr="Type error", exit_code=1)])
        errors = await env.run_build_check()
        assert errors.startswith("Build failed with exit code 1:")
        assert "Type error" in errors

    @pytest.mark.asyncio
    async def test_clean_build_artifacts(self):
        env = FakeEnvironment()
        await env.clean_build_artifacts("svelte")
        assert env.commands == ["rm -rf .svelte-kit"]

    @pytest.mark.asyncio
    async def test_missing_lint_script_passes(self):
        env = FakeEnvironment(
            lint_results=[CommandResult(stdout="", stderr='npm error Missing script: "lint"', exit_code=1)]
        )
        assert await env.run_lint_check() is None

    @pytest.mark.asyncio
    async def test_lint_errors_reported(self):
        output = "app/page.tsx\n  3:7  error  'x' is assigned a value but never used"
        env = FakeEnvironment(lint_results=[CommandResult(stdout=output, stderr="", exit_code=1)])

        errors = await env.run_lint_check()

        assert "never used" in errors
        assert env.commands == ["npm run lint"]

    @pytest.mark.asyncio
    async def test_lint_warnings_only_pass(self):
        env = FakeEnvironment(
            lint_results=[CommandResult(stdout="1:1  warning  Unexpected console statement", exit_code=1)]
        )
        assert await env.run_lint_check() is None


class TestRegistry:
    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self):
        clock = FakeClock()
        registry = EnvironmentRegistry(ttl_seconds=600, clock=clock)
        env = registry.put(MemoryEnvironment())

        clock.now = 599.9
        assert await registry.get(env.id) is env

        clock.now = 600.1
        assert await registry.get(env.id) is None
        assert not env.is_active()
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_get_does_not_extend_ttl(self):
        clock = FakeClock()
        registry = EnvironmentRegistry(ttl_seconds=10, clock=clock)
        env = registry.put(MemoryEnvironment())
        clock.now = 9
        assert await registry.get(env.id) is env
        clock.now = 10
        assert await registry.get(env.id) is None

    @pytest.mark.asyncio
    async def test_sweep(self):
        clock = FakeClock()
        registry = EnvironmentRegistry(ttl_seconds=10, clock=clock)
        registry.put(MemoryEnvironment())
        clock.now = 5
        registry.put(MemoryEnvironment())
        clock.now = 11
        assert await registry.sweep() == 1
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_in_memory_created_directly(self):
        registry = EnvironmentRegistry()
        env = await registry.create("react", kind="in-memory")
        assert env.kind == "in-memory"
        assert await registry.get(env.id) is env

    @pytest.mark.asyncio
    async def test_in_browser_requires_runtime(self):
        registry = EnvironmentRegistry()
        with pytest.raises(EnvironmentProvisioningError):
            await registry.create("react", kind="in-browser")

    @pytest.mark.asyncio
    async def test_provision_retries_then_default_template(self):
        templates: list[str] = []

        async def _factory(framework: str, template: str):
            templates.append(template)
            if template != "codeforge-nextjs":
                raise RuntimeError("template missing")
            return FakeEnvironment(framework)

        registry = EnvironmentRegistry(sleep=no_sleep, factories={"remote-sandbox": _factory})
        env = await registry.create("vue")

        assert templates == ["codeforge-vue"] * 3 + ["codeforge-nextjs"]
        assert env.framework == "nextjs"

    @pytest.mark.asyncio
    async def test_connect_prefers_cache(self):
        connected: list[str] = []

        async def _connector(env_id: str, framework):
            connected.append(env_id)
            return FakeEnvironment(framework)

        registry = EnvironmentRegistry(connector=_connector)
        cached = registry.put(MemoryEnvironment())

        assert await registry.connect(cached.id) is cached
        fresh = await registry.connect("sbx_remote", "nextjs")
        assert connected == ["sbx_remote"]
        assert await registry.get(fresh.id) is fresh

    @pytest.mark.asyncio
    async def test_create_sweeps_expired_entries(self):
        clock = FakeClock()

        async def _factory(framework: str, template: str):
            return FakeEnvironment(framework)

        registry = EnvironmentRegistry(ttl_seconds=10, clock=clock, factories={"remote-sandbox": _factory})
        created = []
        for _ in range(5):
            created.append(await registry.create("nextjs"))
            clock.now += 11

        assert len(registry) == 1
        assert [e.is_active() for e in created] == [False] * 4 + [True]

    @pytest.mark.asyncio
    async def test_connect_sweeps_expired_entries(self):
        clock = FakeClock()

        async def _connector(env_id: str, framework):
            return FakeEnvironment(framework)

        registry = EnvironmentRegistry(ttl_seconds=10, clock=clock, connector=_connector)
        stale = registry.put(MemoryEnvironment())
        clock.now = 20

        await registry.connect("sbx_remote")

        assert not stale.is_active()
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_expiry_timer_disposes_without_lookup(self):
        registry = EnvironmentRegistry(ttl_seconds=0.01)
        env = registry.put(MemoryEnvironment())

        await asyncio.sleep(0.1)

        assert len(registry) == 0
        assert not env.is_active()

    @pytest.mark.asyncio
    async def test_close_disposes_everything(self):
        registry = EnvironmentRegistry()
        envs = [registry.put(MemoryEnvironment()) for _ in range(3)]
        await registry.close()
        assert len(registry) == 0
        assert not any(e.is_active() for e in envs)


class TestRuntimeSelection:
    def test_preview_runs_in_browser(self):
        assert select_runtime("react").kind == "in-browser"

    def test_no_browser_support(self):
        assert select_runtime("react", browser_supported=False).kind == "remote-sandbox"

    def test_full_dev_needs_remote(self):
        assert select_runtime("nextjs", task_type="full-dev").kind == "remote-sandbox"


class TestBrowserEnvironment:
    @pytest.mark.asyncio
    async def test_files_are_workspace_relative(self):
        runtime = FakeBrowserRuntime()
        env = BrowserEnvironment(runtime, "react")
        await env.write_file("/home/user/src/App.tsx", "app")

        assert runtime.files == {"src/App.tsx": "app"}
        assert await env.read_file("src/App.tsx") == "app"
        assert env.id.startswith("wc_")

    @pytest.mark.asyncio
    async def test_commands_run_through_jsh(self):
        runtime = FakeBrowserRuntime()
        result = await BrowserEnvironment(runtime).run_command("npm install zod")

        assert runtime.spawned == [("jsh", ["-c", "npm install zod"])]
        assert result.exit_code == 0
        assert result.stdout == "added 1 package\n"

    @pytest.mark.asyncio
    async def test_existing_server_url_reused(self):
        runtime = FakeBrowserRuntime()
        runtime.url = "https://preview.local"
        url = await BrowserEnvironment(runtime).start_dev_server("react")

        assert url == "https://preview.local"
        assert runtime.spawned == []

    @pytest.mark.asyncio
    async def test_registry_builds_browser_environment(self):
        registry = EnvironmentRegistry()
        env = await registry.create("react", kind="in-browser", browser_runtime=FakeBrowserRuntime())
        assert env.kind == "in-browser"
        assert not env.capabilities.persists_across_reconnect

    @pytest.mark.asyncio
    async def test_dev_server_falls_back_to_preview_url(self):
        sleeps: list[float] = []

        async def _sleep(seconds: float) -> None:
            sleeps.append(seconds)

        runtime = FakeBrowserRuntime()
        url = await BrowserEnvironment(runtime, "vue", sleep=_sleep).start_dev_server("vue")

        assert url == "webcontainer://localhost:5173"
        assert sleeps == [0.5] * 60
        assert runtime.spawned == [("npm", ["run", "dev", "--", "--host", "0.0.0.0", "--port", "5173"])]


class FakeCommand:
    def __init__(self, lines=(), exit_code: int = 0, hang: bool = False) -> None:
        self.cmd_id = "cmd_1"
        self.lines = list(lines)
        self.exit_code = exit_code
        self.hang = hang
        self.killed = False

    async def logs(self):
        for stream, data in self.lines:
            yield SimpleNamespace(stream=stream, data=data)
        if self.hang:
            await asyncio.sleep(10)

    async def wait(self):
        return SimpleNamespace(exit_code=self.exit_code)

    async def kill(self) -> None:
        self.killed = True


class FakeOutput:
    def __init__(self, text: str) -> None:
        self.text = text

    async def stdout(self) -> str:
        return self.text


class FakeSandbox:
    """Stands in for vercel's AsyncSandbox; curl answers with ``status_codes`` in order."""

    def __init__(self, status_codes=(), domain: str | None = None) -> None:
        self.sandbox_id = "sbx_test"
        self.sandbox = SimpleNamespace(cwd="/vercel/sandbox")
        self.status_codes = list(status_codes)
        self.curl_calls = 0
        self.detached: list[FakeCommand] = []
        self.detached_args: list[list[str]] = []
        self.next_command: FakeCommand | None = None
        self.chunks: list[int] = []
        self.write_failures = 0
        self.stopped = False
        self._domain = domain
        self.client = SimpleNamespace(aclose=self._aclose)
        self.close_error: Exception | None = None

    async def run_command(self, cmd: str, args: list[str]):
        if "curl" in args[-1]:
            self.curl_calls += 1
            code = self.status_codes.pop(0) if self.status_codes else "000"
            return FakeOutput(code)
        return FakeOutput("")

    async def run_command_detached(self, cmd: str, args: list[str], env=None):
        self.detached_args.append(args)
        command = self.next_command or FakeCommand()
        self.next_command = None
        self.detached.append(command)
        return command

    async def write_files(self, files) -> None:
        if self.write_failures:
            self.write_failures -= 1
            raise RuntimeError("502 bad gateway")
        self.chunks.append(len(files))

    def domain(self, port: int) -> str:
        if self._domain is None:
            raise ValueError(f"port {port} is not exposed")
        return self._domain

    async def stop(self) -> None:
        self.stopped = True

    async def _aclose(self) -> None:
        if self.close_error is not None:
            raise self.close_error


class TestRemoteSandboxEnvironment:
    @pytest.mark.asyncio
    async def test_dev_server_never_ready_uses_fallback_url(self):
        sleeps: list[float] = []

        async def _sleep(seconds: float) -> None:
            sleeps.append(seconds)

        sandbox = FakeSandbox()
        env = RemoteSandboxEnvironment(sandbox, "nextjs", sleep=_sleep)

        url = await env.start_dev_server("nextjs")

        assert url == "https://sbx_test-3000.vercel.run"
        assert sleeps == [0.5] * 60
        assert sandbox.curl_calls == 61
        assert "npm run dev" in sandbox.detached_args[0][-1]
        await env.dispose()

    @pytest.mark.asyncio
    async def test_dev_server_ready_after_polling(self):
        sandbox = FakeSandbox(status_codes=["000", "000", "200"], domain="https://sbx-test.preview.dev")
        env = RemoteSandboxEnvironment(sandbox, "nextjs", sleep=no_sleep)

        url = await env.start_dev_server("nextjs")

        assert url == "https://sbx-test.preview.dev"
        assert sandbox.curl_calls == 3
        await env.dispose()

    @pytest.mark.asyncio
    async def test_running_server_is_reused(self):
        sandbox = FakeSandbox(status_codes=["200"])
        env = RemoteSandboxEnvironment(sandbox, "nextjs", sleep=no_sleep)

        assert await env.start_dev_server("nextjs") == "https://sbx_test-3000.vercel.run"
        assert sandbox.detached == []

    @pytest.mark.asyncio
    async def test_command_timeout_returns_124(self):
        sandbox = FakeSandbox()
        sandbox.next_command = FakeCommand([("stdout", "compiling\n")], hang=True)
        env = RemoteSandboxEnvironment(sandbox, sleep=no_sleep)

        result = await env.run_command("npm run build", CommandOptions(timeout_ms=50))

        assert result.exit_code == 124
        assert result.stdout == "compiling\n"
        assert result.stderr.endswith("Command timed out after 50ms")
        assert sandbox.detached[0].killed

    @pytest.mark.asyncio
    async def test_command_streams_split_by_channel(self):
        seen: list[str] = []
        sandbox = FakeSandbox()
        sandbox.next_command = FakeCommand(
            [("stdout", "ok\n"), ("stderr", "warn\n"), ("stdout", "done\n")], exit_code=2
        )
        env = RemoteSandboxEnvironment(sandbox, sleep=no_sleep)

        result = await env.run_command("npm test", CommandOptions(cwd="web", on_stderr=seen.append))

        assert result == CommandResult(stdout="ok\ndone\n", stderr="warn\n", exit_code=2)
        assert seen == ["warn\n"]
        assert sandbox.detached_args[0] == ["-lc", "cd /vercel/sandbox/web && npm test"]

    @pytest.mark.asyncio
    async def test_write_chunks_and_retries(self):
        sleeps: list[float] = []

        async def _sleep(seconds: float) -> None:
            sleeps.append(seconds)

        sandbox = FakeSandbox()
        sandbox.write_failures = 1
        env = RemoteSandboxEnvironment(sandbox, sleep=_sleep)

        await env.write_files({f"src/file_{i}.ts": "x" for i in range(130)})

        assert sandbox.chunks == [64, 64, 2]
        assert sleeps == [0.25]

    @pytest.mark.asyncio
    async def test_write_gives_up_after_retries(self):
        sandbox = FakeSandbox()
        sandbox.write_failures = 10
        env = RemoteSandboxEnvironment(sandbox, sleep=no_sleep)

        with pytest.raises(RuntimeError):
            await env.write_files({"a.ts": "a"})
        assert sandbox.write_failures == 6

    @pytest.mark.asyncio
    async def test_process_exit_reported(self):
        sandbox = FakeSandbox()
        sandbox.next_command = FakeCommand(exit_code=3)
        env = RemoteSandboxEnvironment(sandbox, sleep=no_sleep)
        exits: list[int] = []

        handle = await env.spawn_process("node", ["server.js"])
        handle.on_exit(exits.append)
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert exits == [3]

    @pytest.mark.asyncio
    async def test_dispose_tolerates_client_close_failure(self):
        sandbox = FakeSandbox()
        sandbox.close_error = RuntimeError("connection reset")
        env = RemoteSandboxEnvironment(sandbox, sleep=no_sleep)

        await env.dispose()

        assert sandbox.stopped
        assert not env.is_active()
