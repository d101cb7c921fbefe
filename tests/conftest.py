"""Shared fakes for engine tests. No network, no real providers."""

from typing import Any

import pytest

from codeforge.context import AgentRunContext
from codeforge.environment.base import Capabilities, CommandOptions, CommandResult
from codeforge.environment.memory import MemoryEnvironment
from codeforge.environment.registry import EnvironmentRegistry
from codeforge.fallback import AttemptPlan
from codeforge.crawl import CrawledContent
from codeforge.prompts import FRAGMENT_TITLE_PROMPT, FRAMEWORK_SELECTOR_PROMPT, RESPONSE_PROMPT
from codeforge.store import InMemoryProjectStore, ProjectRecord
from codeforge.tools import FileSpec, write_files


SHADCN_PAGE = (
    '"use client"\n'
    'import { Button } from "@/components/ui/button"\n'
    "export default function Page() { return <Button>Add todo</Button> }\n"
)


class FakeEnvironment(MemoryEnvironment):
    """In-memory environment that can run a scripted build and lint.

    Each scripted list is consumed in order; its last result repeats.
    """

    kind = "remote-sandbox"
    capabilities = Capabilities(
        supports_node=True,
        supports_bash=True,
        supports_background_processes=True,
    )

    def __init__(
        self,
        framework: str | None = None,
        build_results: list[CommandResult] | None = None,
        lint_results: list[CommandResult] | None = None,
    ) -> None:
        super().__init__(framework)
        self.scripted: dict[str, list[CommandResult]] = {
            "npm run build": list(build_results or []),
            "npm run lint": list(lint_results or []),
        }
        self.commands: list[str] = []
        self.disposed = False

    async def run_command(self, command: str, options: CommandOptions | None = None) -> CommandResult:
        self.commands.append(command)
        results = self.scripted.get(command)
        if results:
            return results.pop(0) if len(results) > 1 else results[0]
        return CommandResult(stdout="", stderr="", exit_code=0)

    async def dispose(self) -> None:
        self.disposed = True
        await super().dispose()

    async def start_dev_server(self, framework: str) -> str:
        return f"https://{self.id}-3000.example.test"


class FakeRunner:
    """Scripted stand-in for ModelRunner.

    Each ``generate`` call consumes the next script entry: a dict with optional
    ``files`` (path -> content), ``text`` and ``error`` keys. The last entry
    repeats once the script runs out.
    """

    def __init__(self, script: list[dict[str, Any]] | None = None, framework_reply: str = "react") -> None:
        self.script = list(script or [{"text": "<task_summary>Built the app</task_summary>"}])
        self.framework_reply = framework_reply
        self.generate_calls: list[dict[str, Any]] = []
        self.complete_calls: list[tuple[str, str]] = []

    async def generate(
        self,
        plan: AttemptPlan,
        instructions: str,
        messages: list[dict[str, Any]],
        ctx: AgentRunContext,
        max_turns: int | None = None,
    ) -> str:
        self.generate_calls.append({"plan": plan, "messages": list(messages), "max_turns": max_turns})
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if step.get("error"):
            raise step["error"]
        files = step.get("files") or {}
        if files:
            await write_files(ctx, [FileSpec(path=p, content=c) for p, c in files.items()])
        text = step.get("text", "")
        if text:
            ctx.bus.text_delta(text)
        ctx.bus.flush()
        return text

    async def complete(
        self, plan: AttemptPlan, system: str, prompt: str, temperature: float | None = None
    ) -> str:
        self.complete_calls.append((plan.model_id, system))
        if system == FRAMEWORK_SELECTOR_PROMPT:
            return self.framework_reply
        if system == FRAGMENT_TITLE_PROMPT:
            return "Todo App"
        if system == RESPONSE_PROMPT:
            return "Your todo app is ready."
        return ""


class FakeBrowserProcess:
    def __init__(self, lines: list[str], exit_code: int = 0) -> None:
        self.lines = lines
        self.exit_code = exit_code
        self.killed = False

    async def output(self):
        for line in self.lines:
            yield line

    async def wait(self) -> int:
        return self.exit_code

    async def kill(self) -> None:
        self.killed = True


class FakeBrowserRuntime:
    """Browser runtime bridge backed by a dict; every command exits 0."""

    def __init__(self, url: str | None = None) -> None:
        self.files: dict[str, str] = {}
        self.spawned: list[tuple[str, list[str]]] = []
        self.url = url

    async def write_file(self, path: str, content: str) -> None:
        self.files[path] = content

    async def read_file(self, path: str) -> str | None:
        return self.files.get(path)

    async def remove(self, path: str) -> None:
        self.files.pop(path, None)

    async def list_files(self, directory: str) -> list[str]:
        return sorted(self.files)

    async def spawn(self, command: str, args: list[str]) -> FakeBrowserProcess:
        self.spawned.append((command, args))
        return FakeBrowserProcess(["added 1 package\n"])

    def server_url(self, port: int) -> str | None:
        return self.url


class FakeCrawler:
    def __init__(self, pages: dict[str, str] | None = None) -> None:
        self.pages = pages or {}
        self.calls: list[str] = []

    async def crawl(self, url: str) -> CrawledContent | None:
        self.calls.append(url)
        if url not in self.pages:
            raise RuntimeError(f"unreachable: {url}")
        return CrawledContent(url=url, content=self.pages[url], screenshots=["shot.png"])


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def store() -> InMemoryProjectStore:
    s = InMemoryProjectStore()
    s.add_project(ProjectRecord(id="proj_1", user_id="user_1", name="Todo", framework="nextjs"))
    return s


@pytest.fixture
def environments() -> list[FakeEnvironment]:
    return []


@pytest.fixture
def build_results() -> list[CommandResult]:
    return []


@pytest.fixture
def lint_results() -> list[CommandResult]:
    return []


@pytest.fixture
def registry(environments, build_results, lint_results) -> EnvironmentRegistry:
    async def _factory(framework: str, template: str) -> FakeEnvironment:
        env = FakeEnvironment(framework, build_results=build_results, lint_results=lint_results)
        env.template = template
        environments.append(env)
        return env

    return EnvironmentRegistry(ttl_seconds=600, sleep=no_sleep, factories={"remote-sandbox": _factory})
