import asyncio
import json
import logging
import re
import time
import uuid
from typing import Awaitable, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from codeforge.crawl import SearchProvider
from codeforge.fallback import is_timeout_error
from codeforge.models import get_model
from codeforge.prompts import RESEARCH_PROMPTS


logger = logging.getLogger("codeforge.research")

TaskType = Literal["research", "documentation", "comparison"]

DEFAULT_TIMEOUT_MS = 30_000
MAX_RESULTS = 5
MAX_PARALLEL = 3
DETECTION_INPUT_CHARS = 1_000
QUERY_INPUT_CHARS = 500

RESEARCH_PATTERNS: list[tuple[re.Pattern[str], TaskType]] = [
    (re.compile(r"look\s+up", re.IGNORECASE), "research"),
    (re.compile(r"research", re.IGNORECASE), "research"),
    (re.compile(r"find\s+(documentation|docs|info|information|examples)", re.IGNORECASE), "documentation"),
    (re.compile(r"check\s+(docs|documentation)", re.IGNORECASE), "documentation"),
    (re.compile(r"how\s+does\s+(\w+\s+)?work", re.IGNORECASE), "research"),
    (re.compile(r"latest\s+version", re.IGNORECASE), "research"),
    (
        re.compile(r"compare\s+(?:(?!\s+(?:vs|versus|and)\s+).){1,200}?\s+(vs|versus|and)\s+", re.IGNORECASE),
        "comparison",
    ),
    (re.compile(r"search\s+for", re.IGNORECASE), "research"),
    (re.compile(r"best\s+practices", re.IGNORECASE), "research"),
    (re.compile(r"how\s+to\s+use", re.IGNORECASE), "documentation"),
]

QUERY_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"research\s+(.{1,200}?)(?:\.|$)", re.IGNORECASE),
    re.compile(r"look up\s+(.{1,200}?)(?:\.|$)", re.IGNORECASE),
    re.compile(r"find\s+(?:documentation|docs|info|information)\s+(?:for|about)\s+(.{1,200}?)(?:\.|$)", re.IGNORECASE),
    re.compile(r"how (?:does|do|to)\s+(.{1,200}?)(?:\?|$)", re.IGNORECASE),
    re.compile(r"compare\s+(.{1,200}?)\s+(?:vs|versus|and)", re.IGNORECASE),
    re.compile(r"best\s+practices\s+(?:for|of)\s+(.{1,200}?)(?:\.|$)", re.IGNORECASE),
]

_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")


class ResearchDetection(BaseModel):
    needs_research: bool
    task_type: TaskType | None = None
    query: str | None = None


class SourceRef(BaseModel):
    url: str = ""
    title: str = ""
    snippet: str = ""


class CodeExample(BaseModel):
    code: str = ""
    description: str = ""


class ComparisonItem(BaseModel):
    name: str
    pros: list[str] = Field(default_factory=list)
    cons: list[str] = Field(default_factory=list)


class ComparisonResult(BaseModel):
    items: list[ComparisonItem] = Field(default_factory=list)
    recommendation: str = ""


class SubagentFindings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    summary: str = ""
    key_points: list[str] = Field(default_factory=list, alias="keyPoints")
    examples: list[CodeExample] = Field(default_factory=list)
    sources: list[SourceRef] = Field(default_factory=list)
    comparison: ComparisonResult | None = None


class SubagentRequest(BaseModel):
    task_id: str = Field(default_factory=lambda: f"research_{uuid.uuid4().hex[:8]}")
    task_type: TaskType
    query: str
    sources: list[str] = Field(default_factory=list)
    max_results: int = MAX_RESULTS
    timeout_ms: int = DEFAULT_TIMEOUT_MS


class SubagentResponse(BaseModel):
    task_id: str
    status: Literal["complete", "timeout", "error", "partial"]
    findings: SubagentFindings | None = None
    error: str | None = None
    elapsed_ms: float = 0.0


def extract_research_query(prompt: str) -> str:
    text = (prompt or "")[:QUERY_INPUT_CHARS]
    for pattern in QUERY_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1):
            return match.group(1).strip()
    return text[:100]


def detect_research_need(prompt: str) -> ResearchDetection:
    """Decide from fixed patterns whether a prompt needs external lookup."""
    text = (prompt or "")[:DETECTION_INPUT_CHARS]
    for pattern, task_type in RESEARCH_PATTERNS:
        if pattern.search(text):
            return ResearchDetection(
                needs_research=True, task_type=task_type, query=extract_research_query(text)
            )
    return ResearchDetection(needs_research=False)


def should_use_subagent(model_id: str, prompt: str) -> bool:
    if not get_model(model_id).supports_research:
        return False
    return detect_research_need(prompt).needs_research


def _fallback_findings(text: str) -> SubagentFindings:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return SubagentFindings(summary=text[:500], key_points=lines[:5])


def parse_subagent_response(text: str, task_type: TaskType) -> SubagentFindings:
    """Parse a subagent reply as JSON, falling back to plain-text findings."""
    match = _JSON_BLOCK.search(text or "")
    if not match:
        logger.warning("no JSON in subagent response, using plain-text fallback")
        return _fallback_findings(text or "")
    try:
        data = json.loads(match.group(0))
        if not isinstance(data, dict):
            raise ValueError("subagent JSON is not an object")
        if task_type == "comparison" and data.get("items"):
            return SubagentFindings(
                summary=str(data.get("summary") or ""),
                sources=data.get("sources") or [],
                comparison=ComparisonResult(
                    items=data.get("items") or [],
                    recommendation=str(data.get("recommendation") or ""),
                ),
            )
        return SubagentFindings.model_validate(
            {k: v for k, v in data.items() if k in ("summary", "keyPoints", "examples", "sources") and v}
        )
    except (ValueError, ValidationError) as e:
        logger.warning("failed to parse subagent JSON: %s", str(e))
        return _fallback_findings(text)


def build_subagent_prompt(request: SubagentRequest, sources: list[SourceRef] | None = None) -> str:
    template = RESEARCH_PROMPTS.get(request.task_type, RESEARCH_PROMPTS["research"])
    prompt = template.format(query=request.query, max_results=request.max_results)
    refs = list(sources or []) + [SourceRef(url=u) for u in request.sources]
    if refs:
        lines = [f"- {s.title or s.url} ({s.url}): {s.snippet}" for s in refs]
        prompt += "\nStart from these sources:\n" + "\n".join(lines) + "\n"
    return prompt


class SubagentDispatcher:
    """Runs auxiliary research calls with per-call timeouts and bounded fan-out.

    ``complete`` performs one model call (prompt in, text out). ``search`` is an
    optional web-search collaborator used to seed sources.
    """

    def __init__(
        self,
        complete: Callable[[str], Awaitable[str]],
        search: SearchProvider | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._complete = complete
        self._search = search
        self._clock = clock

    async def _seed_sources(self, request: SubagentRequest) -> list[SourceRef]:
        if self._search is None:
            return []
        try:
            results = await self._search.search(request.query)
        except Exception as e:
            logger.warning("search failed for %r: %s", request.query, str(e))
            return []
        return [
            SourceRef(url=r.url, title=r.title, snippet=r.snippet)
            for r in results[: request.max_results]
        ]

    async def _run(self, request: SubagentRequest) -> SubagentFindings:
        sources = await self._seed_sources(request)
        text = await self._complete(build_subagent_prompt(request, sources))
        findings = parse_subagent_response(text, request.task_type)
        if sources and not findings.sources:
            findings.sources = sources
        return findings

    async def spawn(self, request: SubagentRequest) -> SubagentResponse:
        start = self._clock()
        logger.info("subagent[%s] %s: %s", request.task_id, request.task_type, request.query[:120])
        try:
            findings = await asyncio.wait_for(self._run(request), timeout=request.timeout_ms / 1000)
        except asyncio.TimeoutError:
            elapsed = (self._clock() - start) * 1000
            logger.warning("subagent[%s] timed out after %dms", request.task_id, int(elapsed))
            return SubagentResponse(
                task_id=request.task_id,
                status="timeout",
                error="Subagent research timed out",
                elapsed_ms=elapsed,
            )
        except Exception as e:
            elapsed = (self._clock() - start) * 1000
            logger.warning("subagent[%s] failed: %s", request.task_id, str(e))
            return SubagentResponse(
                task_id=request.task_id,
                status="timeout" if is_timeout_error(e) else "error",
                error=str(e),
                elapsed_ms=elapsed,
            )
        elapsed = (self._clock() - start) * 1000
        logger.info("subagent[%s] completed in %dms", request.task_id, int(elapsed))
        return SubagentResponse(
            task_id=request.task_id, status="complete", findings=findings, elapsed_ms=elapsed
        )

    async def spawn_parallel(self, requests: list[SubagentRequest]) -> list[SubagentResponse]:
        """Run requests in sequential batches of at most MAX_PARALLEL; order is preserved."""
        results: list[SubagentResponse] = []
        for i in range(0, len(requests), MAX_PARALLEL):
            batch = requests[i : i + MAX_PARALLEL]
            results.extend(await asyncio.gather(*(self.spawn(r) for r in batch)))
        return results


def merge_subagent_results(responses: list[SubagentResponse]) -> str:
    """Render completed findings as a context block; failed calls are omitted."""
    blocks: list[str] = []
    for resp in responses:
        if resp.status != "complete" or resp.findings is None:
            continue
        f = resp.findings
        lines = [f"Research findings ({resp.task_id}):", f.summary]
        lines.extend(f"- {point}" for point in f.key_points)
        for example in f.examples:
            lines.append(f"Example: {example.description}\n{example.code}")
        if f.comparison is not None:
            for item in f.comparison.items:
                lines.append(f"{item.name}: pros {', '.join(item.pros)}; cons {', '.join(item.cons)}")
            if f.comparison.recommendation:
                lines.append(f"Recommendation: {f.comparison.recommendation}")
        for src in f.sources:
            lines.append(f"Source: {src.title or src.url} {src.url}".rstrip())
        blocks.append("\n".join(line for line in lines if line))
    return "\n\n".join(blocks)
