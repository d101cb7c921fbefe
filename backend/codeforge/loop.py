import asyncio
import logging
import re
from typing import Any, AsyncIterator, Awaitable, Callable

from codeforge.budget import TimeoutManager, estimate_complexity, should_skip_non_critical
from codeforge.cache import ResponseCache, prompt_key
from codeforge.context import AgentRunContext, AgentState, GenerationRequest
from codeforge.crawl import MAX_SCREENSHOTS, CrawledContent, Crawler, crawl_prompt_urls
from codeforge.environment.base import EnvironmentKind, ExecutionEnvironment
from codeforge.environment.browser import BrowserRuntime
from codeforge.environment.registry import EnvironmentRegistry
from codeforge.environment.runtime import select_runtime
from codeforge.errors import ResourceNotFound
from codeforge.events import EventBus, StreamEvent
from codeforge.fallback import FallbackChain, retry_on_transient, with_rate_limit_retry, with_retry
from codeforge.generation import ModelRunner, extract_summary, first_attempt
from codeforge.models import (
    CLASSIFIER_MODEL,
    DEFAULT_FRAMEWORK,
    FRAMEWORKS,
    get_framework_port,
    get_model,
    select_model_for_task,
)
from codeforge.prompts import (
    FRAGMENT_TITLE_PROMPT,
    FRAMEWORK_SELECTOR_PROMPT,
    RESPONSE_PROMPT,
    SUMMARY_REQUEST_PROMPT,
    build_fix_prompt,
    get_framework_prompt,
)
from codeforge.research import (
    SubagentDispatcher,
    SubagentRequest,
    detect_research_need,
    merge_subagent_results,
    should_use_subagent,
)
from codeforge.store import ProjectRecord, ProjectStore


logger = logging.getLogger("codeforge.loop")

AUTO_FIX_MAX_ATTEMPTS = 2
HISTORY_WINDOW = 3
SUMMARY_MAX_TURNS = 2
SUMMARY_MAX_ATTEMPTS = 2
SUMMARY_PREVIEW_FILES = 5
CLASSIFIER_TEMPERATURE = 0.3
DEFAULT_TITLE = "Generated Fragment"
DEFAULT_RESPONSE = "Generated code is ready."
SHADCN_IMPORT = "@/components/ui/"
SHADCN_ERROR = (
    "[ERROR] Missing Shadcn UI usage. Rebuild the UI using components imported "
    "from '@/components/ui/*'."
)

AUTO_FIX_ERROR_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"Error:", re.IGNORECASE),
    re.compile(r"\[ERROR\]", re.IGNORECASE),
    re.compile(r"ERROR"),
    re.compile(r"Failed\b", re.IGNORECASE),
    re.compile(r"failure\b", re.IGNORECASE),
    re.compile(r"Exception\b", re.IGNORECASE),
    re.compile(r"SyntaxError", re.IGNORECASE),
    re.compile(r"TypeError", re.IGNORECASE),
    re.compile(r"ReferenceError", re.IGNORECASE),
    re.compile(r"Module not found", re.IGNORECASE),
    re.compile(r"Cannot find module", re.IGNORECASE),
    re.compile(r"Build failed", re.IGNORECASE),
    re.compile(r"Compilation error", re.IGNORECASE),
]


class _RunCancelled(Exception):
    pass


def should_trigger_auto_fix(message: str | None) -> bool:
    if not message:
        return False
    return any(p.search(message) for p in AUTO_FIX_ERROR_PATTERNS)


def uses_shadcn_components(files: dict[str, str]) -> bool:
    return any(path.endswith(".tsx") and SHADCN_IMPORT in content for path, content in files.items())


def parse_framework(reply: str) -> str:
    """First known framework name in a classifier reply, else the default."""
    lowered = (reply or "").lower()
    found = [(lowered.find(fw), fw) for fw in FRAMEWORKS if fw in lowered]
    if not found:
        return DEFAULT_FRAMEWORK
    return min(found)[1]


def fallback_summary(files: dict[str, str]) -> str:
    paths = list(files)
    preview = paths[:SUMMARY_PREVIEW_FILES]
    remaining = len(paths) - len(preview)
    plural = "" if len(paths) == 1 else "s"
    more = f" (and {remaining} more)" if remaining > 0 else ""
    return f"Generated {len(paths)} file{plural}: {', '.join(preview)}{more}."


class GenerationLoop:
    """Drives one request from prompt to persisted fragment.

    Stages run in a fixed order (init, framework resolution and provisioning,
    context assembly, generation, summary, validation with auto-fix, finalize).
    Every stage reports on the run's EventBus; ``run`` yields those events as
    they are produced. Shared collaborators (registry, cache, runner) are
    injected; everything else is created per run. Without an explicit
    ``environment_kind`` the runtime is chosen per framework, and the
    in-browser runtime only when a ``browser_runtime`` is attached.
    """

    def __init__(
        self,
        store: ProjectStore,
        registry: EnvironmentRegistry,
        runner: ModelRunner,
        dispatcher: SubagentDispatcher | None = None,
        crawler: Crawler | None = None,
        cache: ResponseCache | None = None,
        environment_kind: EnvironmentKind | None = None,
        browser_runtime: BrowserRuntime | None = None,
        timeout_factory: Callable[[], TimeoutManager] = TimeoutManager,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.registry = registry
        self.runner = runner
        self.dispatcher = dispatcher
        self.crawler = crawler
        self.cache = cache or ResponseCache()
        self.environment_kind = environment_kind
        self.browser_runtime = browser_runtime
        self._timeout_factory = timeout_factory
        self._sleep = sleep
        self._background: set[asyncio.Task] = set()

    async def run(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        bus = EventBus(run_id=request.project_id)
        producer = asyncio.create_task(self._produce(request, bus))
        finished = False
        try:
            async for event in bus:
                yield event
            finished = True
        finally:
            if finished:
                await producer
            elif not producer.done():
                # Consumer went away; the producer stops at its next stage boundary
                bus.cancelled = True
                self._background.add(producer)
                producer.add_done_callback(self._background.discard)

    async def _produce(self, request: GenerationRequest, bus: EventBus) -> None:
        try:
            await self._execute(request, bus)
        except _RunCancelled:
            logger.info("run[%s] cancelled by consumer", request.project_id)
        except Exception as e:
            logger.error("run[%s] failed: %s", request.project_id, str(e))
            bus.emit("error", {"message": str(e)})
        finally:
            bus.close()

    def _checkpoint(self, bus: EventBus, timeout: TimeoutManager, stage: str) -> None:
        if bus.cancelled:
            raise _RunCancelled()
        seen = len(timeout.warnings)
        check = timeout.check_timeout()
        if len(timeout.warnings) > seen:
            bus.emit("time-budget", {"message": check.message, **timeout.get_summary()})
        timeout.start_stage(stage)
        bus.emit("progress", {"stage": stage, "elapsed_ms": timeout.get_elapsed()})

    async def _execute(self, request: GenerationRequest, bus: EventBus) -> None:
        bus.status("Initializing...")
        timeout = self._timeout_factory()
        chain = FallbackChain(on_status=bus.status, sleep=self._sleep)

        timeout.start_stage("initialization")
        project = await self.store.get_project(request.project_id)
        if project is None:
            raise ResourceNotFound("Project not found")
        complexity = estimate_complexity(request.prompt)
        budget = timeout.adapt_budget(complexity)
        model_id = select_model_for_task(
            request.prompt, request.model_preference or project.model_preference
        )
        logger.info(
            "run[%s] model=%s complexity=%s framework=%s",
            request.project_id,
            model_id,
            complexity,
            project.framework,
        )
        bus.emit(
            "time-budget",
            {"complexity": complexity, "budget": budget.model_dump(), **timeout.get_summary()},
        )

        bus.status("Setting up environment...")
        if project.framework:
            framework = project.framework
            environment = await self._provision(framework)
        else:
            environment, framework = await asyncio.gather(
                self._provision(DEFAULT_FRAMEWORK),
                self._resolve_framework(project, request.prompt),
            )
            if framework != DEFAULT_FRAMEWORK:
                bus.status(f"Switching environment to the {framework} template...")
                await self.registry.evict(environment.id)
                environment = await self._provision(framework)
        # A template fallback builds the environment for the default framework
        framework = environment.framework or framework
        timeout.end_stage("initialization")

        state = AgentState(selected_framework=framework)
        ctx = AgentRunContext(state=state, environment=environment, bus=bus)
        instructions = get_framework_prompt(framework)

        self._checkpoint(bus, timeout, "research")
        crawled = await self._crawl(request.prompt, bus)
        research = await self._research(model_id, request.prompt, timeout, bus)
        messages = await self._assemble_messages(request, crawled, research)
        timeout.end_stage("research")

        self._checkpoint(bus, timeout, "code_generation")
        bus.status("Generating code...")
        text = await chain.execute(
            model_id, lambda plan: self.runner.generate(plan, instructions, messages, ctx)
        )
        state.summary = extract_summary(text) or ""
        if not state.summary and state.files:
            state.summary = await self._request_summary(
                chain, model_id, instructions, messages, text, ctx
            )
        timeout.end_stage("code_generation")

        self._checkpoint(bus, timeout, "validation")
        warning = await self._validate_and_fix(
            chain, model_id, instructions, messages, text, ctx, timeout
        )
        timeout.end_stage("validation")

        self._checkpoint(bus, timeout, "finalization")
        url = await self._ensure_dev_server(environment, framework)
        title, response = await self._describe(state.summary)
        descriptor = get_model(model_id)
        screenshots = [s for c in crawled for s in c.screenshots][:MAX_SCREENSHOTS]
        message_id = await self.store.create_message(
            request.project_id, response, role="ASSISTANT", type="RESULT"
        )
        fragment_id = await self.store.create_fragment(
            message_id,
            title,
            dict(state.files),
            framework,
            sandbox_id=environment.id,
            sandbox_url=url,
            metadata={
                "model": model_id,
                "model_name": descriptor.name,
                "provider": descriptor.provider,
                "screenshots": screenshots,
            },
        )
        timeout.end_stage("finalization")

        payload: dict[str, Any] = {
            "summary": state.summary,
            "files": dict(state.files),
            "framework": framework,
            "url": url,
            "title": title,
            "message_id": message_id,
            "fragment_id": fragment_id,
        }
        if warning:
            payload["warning"] = warning
        logger.info(
            "run[%s] complete files=%d elapsed=%dms",
            request.project_id,
            len(state.files),
            int(timeout.get_elapsed()),
        )
        bus.emit("complete", payload)

    async def _provision(self, framework: str) -> ExecutionEnvironment:
        kind = self.environment_kind or select_runtime(
            framework, browser_supported=self.browser_runtime is not None
        ).kind
        return await self.registry.create(framework, kind=kind, browser_runtime=self.browser_runtime)

    async def _resolve_framework(self, project: ProjectRecord, prompt: str) -> str:
        async def _classify() -> str:
            reply = await with_retry(
                lambda: self.runner.complete(
                    first_attempt(CLASSIFIER_MODEL),
                    FRAMEWORK_SELECTOR_PROMPT,
                    f"User request: {prompt}",
                    temperature=CLASSIFIER_TEMPERATURE,
                ),
                max_attempts=2,
                retry_if=retry_on_transient,
                sleep=self._sleep,
            )
            return parse_framework(reply)

        try:
            framework = await self.cache.get_or_compute(prompt_key("framework", prompt), _classify)
        except Exception as e:
            logger.warning("framework selection failed, using %s: %s", DEFAULT_FRAMEWORK, str(e))
            return DEFAULT_FRAMEWORK
        try:
            await self.store.update_project_framework(project.id, framework)
        except Exception as e:
            logger.warning("storing framework for %s failed: %s", project.id, str(e))
        return framework

    async def _crawl(self, prompt: str, bus: EventBus) -> list[CrawledContent]:
        if self.crawler is None:
            return []
        crawled = await crawl_prompt_urls(self.crawler, prompt)
        if crawled:
            bus.status(f"Read {len(crawled)} linked page(s)")
        return crawled

    async def _research(
        self, model_id: str, prompt: str, timeout: TimeoutManager, bus: EventBus
    ) -> str:
        if self.dispatcher is None or not should_use_subagent(model_id, prompt):
            return ""
        if timeout.should_skip_stage("research") or should_skip_non_critical(timeout.check_timeout()):
            bus.status("Skipping research to stay within the time budget")
            return ""
        detection = detect_research_need(prompt)
        request = SubagentRequest(task_type=detection.task_type, query=detection.query or prompt[:100])
        bus.emit(
            "research-start",
            {"task_id": request.task_id, "task_type": request.task_type, "query": request.query},
        )
        responses = await self.dispatcher.spawn_parallel([request])
        bus.emit(
            "research-complete",
            {
                "results": [
                    {"task_id": r.task_id, "status": r.status, "elapsed_ms": r.elapsed_ms, "error": r.error}
                    for r in responses
                ]
            },
        )
        return merge_subagent_results(responses)

    async def _assemble_messages(
        self, request: GenerationRequest, crawled: list[CrawledContent], research: str
    ) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        for page in crawled:
            messages.append(
                {"role": "user", "content": f"Crawled context from {page.url}:\n{page.content}"}
            )
        if research:
            messages.append({"role": "user", "content": research})

        history = [(m.role, m.content) for m in request.conversation_history[-HISTORY_WINDOW:]]
        if not request.conversation_history:
            stored = await self.store.list_messages(request.project_id, HISTORY_WINDOW + 1)
            history = [
                (m.role, m.content) for m in stored if m.content and m.content != request.prompt
            ][-HISTORY_WINDOW:]
        for role, content in history:
            role = role.lower()
            messages.append({"role": "assistant" if role == "assistant" else "user", "content": content})

        messages.append({"role": "user", "content": request.prompt})
        return messages

    async def _request_summary(
        self,
        chain: FallbackChain,
        model_id: str,
        instructions: str,
        messages: list[dict[str, Any]],
        text: str,
        ctx: AgentRunContext,
    ) -> str:
        ctx.bus.status("Generating summary...")
        follow_up = list(messages)
        if text:
            follow_up.append({"role": "assistant", "content": text})
        follow_up.append({"role": "user", "content": SUMMARY_REQUEST_PROMPT})
        try:
            reply = await chain.execute(
                model_id,
                lambda plan: self.runner.generate(
                    plan, instructions, follow_up, ctx, max_turns=SUMMARY_MAX_TURNS
                ),
                max_attempts=SUMMARY_MAX_ATTEMPTS,
            )
            summary = extract_summary(reply)
        except Exception as e:
            logger.warning("summary request failed: %s", str(e))
            summary = None
        return summary or fallback_summary(ctx.state.files)

    async def _collect_errors(
        self, environment: ExecutionEnvironment, state: AgentState, bus: EventBus
    ) -> str:
        """Validation errors for the current files, empty when everything passed."""
        errors: list[str] = []
        build_errors: str | None = None
        if environment.capabilities.supports_bash:
            bus.status("Running validation...")
            try:
                lint_errors = await environment.run_lint_check()
            except Exception as e:
                logger.warning("lint check could not run: %s", str(e))
                lint_errors = None
            if lint_errors:
                errors.append(lint_errors)
            try:
                await environment.clean_build_artifacts(state.selected_framework)
                build_errors = await environment.run_build_check()
            except Exception as e:
                logger.warning("build check could not run: %s", str(e))
        else:
            bus.status("Skipping build validation: environment cannot run shell commands")
        if state.selected_framework == "nextjs" and not uses_shadcn_components(state.files):
            errors.append(SHADCN_ERROR)
        if build_errors:
            errors.append(build_errors)
        return "\n\n".join(errors)

    async def _validate_and_fix(
        self,
        chain: FallbackChain,
        model_id: str,
        instructions: str,
        messages: list[dict[str, Any]],
        text: str,
        ctx: AgentRunContext,
        timeout: TimeoutManager,
    ) -> str | None:
        """Validate, then re-run generation with the errors until clean or out of attempts.

        Returns a warning when errors remain.
        """
        state = ctx.state
        if not state.files:
            return None
        errors = await self._collect_errors(ctx.environment, state, ctx.bus)
        if not errors and should_trigger_auto_fix(state.summary):
            errors = state.summary

        attempts = 0
        while errors and attempts < AUTO_FIX_MAX_ATTEMPTS:
            if ctx.bus.cancelled:
                raise _RunCancelled()
            if should_skip_non_critical(timeout.check_timeout()):
                logger.warning("auto-fix skipped: time budget nearly exhausted")
                break
            attempts += 1
            state.bump("auto_fix")
            ctx.bus.status(f"Auto-fixing errors (attempt {attempts}/{AUTO_FIX_MAX_ATTEMPTS})...")
            fix_messages = list(messages)
            if text:
                fix_messages.append({"role": "assistant", "content": text})
            fix_messages.append({"role": "user", "content": build_fix_prompt(errors)})
            try:
                text = await chain.execute(
                    model_id,
                    lambda plan: self.runner.generate(plan, instructions, fix_messages, ctx),
                )
            except Exception as e:
                logger.warning("auto-fix attempt %d failed: %s", attempts, str(e))
                break
            summary = extract_summary(text)
            if summary:
                state.summary = summary
            errors = await self._collect_errors(ctx.environment, state, ctx.bus)
            if not errors and should_trigger_auto_fix(summary):
                errors = summary or ""
            if not errors:
                ctx.bus.status("All errors resolved!")

        if errors:
            return f"Auto-fix could not resolve all errors after {attempts} attempt(s)."
        return None

    async def _ensure_dev_server(self, environment: ExecutionEnvironment, framework: str) -> str | None:
        try:
            if environment.capabilities.supports_background_processes:
                return await environment.start_dev_server(framework)
            return await environment.get_server_url(get_framework_port(framework))
        except Exception as e:
            logger.warning("dev server unavailable for %s: %s", environment.id, str(e))
            return None

    async def _describe(self, summary: str) -> tuple[str, str]:
        """Fragment title and user-facing response, generated in parallel."""
        plan = first_attempt(CLASSIFIER_MODEL)
        source = summary or "A generated web application."

        async def _ask(system: str) -> str:
            return await with_rate_limit_retry(
                lambda: self.runner.complete(plan, system, source), sleep=self._sleep
            )

        title, response = await asyncio.gather(
            _ask(FRAGMENT_TITLE_PROMPT), _ask(RESPONSE_PROMPT), return_exceptions=True
        )
        if isinstance(title, BaseException) or not str(title).strip():
            if isinstance(title, BaseException):
                logger.warning("title generation failed: %s", str(title))
            title = DEFAULT_TITLE
        if isinstance(response, BaseException) or not str(response).strip():
            if isinstance(response, BaseException):
                logger.warning("response generation failed: %s", str(response))
            response = DEFAULT_RESPONSE
        return str(title).strip(), str(response).strip()
