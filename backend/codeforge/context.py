from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from codeforge.environment.base import ExecutionEnvironment
from codeforge.events import EventBus
from codeforge.models import DEFAULT_FRAMEWORK


class ConversationMessage(BaseModel):
    role: str
    content: str


class GenerationRequest(BaseModel):
    """Immutable input for one generation run."""

    model_config = ConfigDict(frozen=True)

    project_id: str
    prompt: str
    model_preference: str | None = None
    conversation_history: tuple[ConversationMessage, ...] = ()


class AgentState(BaseModel):
    """Mutable state owned by exactly one generation run.

    Attributes:
        summary: Latest task summary extracted from model output.
        files: Mapping of file paths to contents; the last write wins.
        selected_framework: Framework the run generates code for.
        retry_counters: Per-stage retry counts, for diagnostics.
    """

    summary: str = ""
    files: dict[str, str] = Field(default_factory=dict)
    selected_framework: str = DEFAULT_FRAMEWORK
    retry_counters: dict[str, int] = Field(default_factory=dict)

    def bump(self, counter: str) -> int:
        self.retry_counters[counter] = self.retry_counters.get(counter, 0) + 1
        return self.retry_counters[counter]


class AgentRunContext(BaseModel):
    """Context handed to agent tools for one generation pass."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    state: AgentState
    environment: ExecutionEnvironment
    bus: EventBus
    tool_calls: int = 0
    text: list[str] = Field(default_factory=list)

    def next_tool_id(self) -> str:
        self.tool_calls += 1
        return f"tc_{self.tool_calls}"

    def tool_started(self, name: str, arguments: dict[str, Any]) -> str:
        tool_id = self.next_tool_id()
        self.bus.queue_side_event(
            "tool-call", {"tool_id": tool_id, "name": name, "arguments": arguments}
        )
        return tool_id

    def tool_completed(self, tool_id: str, name: str, output: Any) -> None:
        self.bus.queue_side_event(
            "tool-output", {"tool_id": tool_id, "name": name, "output_data": output}
        )
