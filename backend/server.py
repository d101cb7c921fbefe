import logging
import time
import traceback
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from codeforge import config
from codeforge.cache import ResponseCache
from codeforge.context import ConversationMessage, GenerationRequest
from codeforge.crawl import CRAWL_TIMEOUT_S, HttpCrawler
from codeforge.environment import EnvironmentRegistry
from codeforge.events import SSE_HEADERS, emit_event, event_to_sse, sse_format
from codeforge.generation import ModelRunner, subagent_completion
from codeforge.loop import GenerationLoop
from codeforge.models import list_models as list_model_table
from codeforge.providers import ProviderClients
from codeforge.research import SubagentDispatcher
from codeforge.run_store import get_run_request, set_run_request
from codeforge.store import InMemoryProjectStore, ProjectRecord


# Basic logger for server diagnostics (inherits uvicorn handlers)
logger = logging.getLogger("codeforge.server")
if not logger.handlers:
    logger.setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    providers = ProviderClients()
    await providers.open()
    http_client = httpx.AsyncClient(timeout=CRAWL_TIMEOUT_S, follow_redirects=True)
    registry = EnvironmentRegistry(ttl_seconds=config.ENV_TTL_SECONDS)
    runner = ModelRunner(providers)
    store = InMemoryProjectStore()
    app.state.store = store
    app.state.loop = GenerationLoop(
        store=store,
        registry=registry,
        runner=runner,
        dispatcher=SubagentDispatcher(subagent_completion(runner)),
        crawler=HttpCrawler(http_client),
        cache=ResponseCache(ttl_seconds=config.CACHE_TTL_SECONDS),
    )
    logger.info("codeforge engine ready")
    try:
        yield
    finally:
        await registry.close()
        await http_client.aclose()
        await providers.close()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ProjectRequest(BaseModel):
    """Payload to register a project with the in-process store."""

    user_id: str
    name: str = ""
    framework: str | None = None
    model_preference: str | None = None


class RunRequest(BaseModel):
    """Payload to start a generation run and get a task id for its event stream."""

    project_id: str
    prompt: str
    model: str | None = None
    message_history: list[ConversationMessage] = []


def make_task_id() -> str:
    return f"task_{int(time.time()*1000)}_{uuid.uuid4().hex[:8]}"


@app.post("/api/projects")
async def create_project(request: ProjectRequest) -> dict[str, Any]:
    project = app.state.store.add_project(
        ProjectRecord(
            id=f"proj_{uuid.uuid4().hex[:12]}",
            user_id=request.user_id,
            name=request.name,
            framework=request.framework,
            model_preference=request.model_preference,
        )
    )
    return {"project_id": project.id}


@app.post("/api/runs")
async def create_run(request: RunRequest) -> dict[str, Any]:
    """Create a new run and return its id.

    Frontend should then connect to SSE at GET /api/runs/{task_id}/events
    """
    task_id = make_task_id()
    logger.info(
        "create_run[%s] project=%s model=%s prompt_len=%d history=%d",
        task_id,
        request.project_id,
        request.model,
        len(request.prompt or ""),
        len(request.message_history),
    )
    await set_run_request(
        task_id,
        GenerationRequest(
            project_id=request.project_id,
            prompt=request.prompt,
            model_preference=request.model,
            conversation_history=tuple(request.message_history),
        ),
    )
    return {"task_id": task_id}


@app.get("/api/runs/{task_id}/events")
async def run_events(task_id: str):
    """Connect to the run's SSE event stream and start processing."""
    run_request = await get_run_request(task_id)
    if run_request is None:
        raise HTTPException(status_code=404, detail="Unknown or expired run")
    loop: GenerationLoop = app.state.loop

    async def event_generator() -> AsyncGenerator[str, None]:
        try:
            async for event in loop.run(run_request):
                yield event_to_sse(task_id, event)
        except Exception as e:
            logger.error("run_events[%s] error: %s", task_id, str(e))
            tb = traceback.format_exc(limit=10)
            yield sse_format(emit_event(task_id, "status", data={"message": f"stream exception: {str(e)}\n{tb}"}))
            yield sse_format(emit_event(task_id, "error", error=str(e)))

    return StreamingResponse(event_generator(), headers=SSE_HEADERS)


@app.get("/api/models")
async def list_models() -> dict[str, Any]:
    """Return the models a run may request."""
    return {"models": list_model_table()}


@app.get("/")
def read_root():
    return {"Hello": "Codeforge"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8081)
