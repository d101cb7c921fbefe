import itertools
import time
from typing import Any, Protocol

from pydantic import BaseModel, Field


class ProjectRecord(BaseModel):
    id: str
    user_id: str = ""
    name: str = ""
    framework: str | None = None
    model_preference: str | None = None


class MessageRecord(BaseModel):
    id: str
    project_id: str
    role: str
    content: str
    type: str = "RESULT"
    status: str = "COMPLETE"
    created_at: float = Field(default_factory=time.time)


class FragmentRecord(BaseModel):
    id: str
    message_id: str
    title: str
    files: dict[str, str]
    framework: str
    sandbox_id: str | None = None
    sandbox_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProjectStore(Protocol):
    """Persistence collaborator; all durable state lives behind this interface."""

    async def get_project(self, project_id: str) -> ProjectRecord | None: ...

    async def update_project_framework(self, project_id: str, framework: str) -> None: ...

    async def list_messages(self, project_id: str, limit: int) -> list[MessageRecord]: ...

    async def create_message(
        self, project_id: str, content: str, role: str = "ASSISTANT", type: str = "RESULT"
    ) -> str: ...

    async def create_fragment(
        self,
        message_id: str,
        title: str,
        files: dict[str, str],
        framework: str,
        sandbox_id: str | None = None,
        sandbox_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str: ...


class InMemoryProjectStore:
    """Dict-backed ProjectStore for local runs and tests."""

    def __init__(self) -> None:
        self.projects: dict[str, ProjectRecord] = {}
        self.messages: list[MessageRecord] = []
        self.fragments: dict[str, FragmentRecord] = {}
        self._ids = itertools.count(1)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def add_project(self, project: ProjectRecord) -> ProjectRecord:
        self.projects[project.id] = project
        return project

    def add_message(self, project_id: str, role: str, content: str) -> MessageRecord:
        message = MessageRecord(
            id=self._next_id("msg"), project_id=project_id, role=role, content=content
        )
        self.messages.append(message)
        return message

    async def get_project(self, project_id: str) -> ProjectRecord | None:
        return self.projects.get(project_id)

    async def update_project_framework(self, project_id: str, framework: str) -> None:
        project = self.projects.get(project_id)
        if project is not None:
            self.projects[project_id] = project.model_copy(update={"framework": framework})

    async def list_messages(self, project_id: str, limit: int) -> list[MessageRecord]:
        own = [m for m in self.messages if m.project_id == project_id]
        return own[-limit:] if limit > 0 else []

    async def create_message(
        self, project_id: str, content: str, role: str = "ASSISTANT", type: str = "RESULT"
    ) -> str:
        message = MessageRecord(
            id=self._next_id("msg"), project_id=project_id, role=role, content=content, type=type
        )
        self.messages.append(message)
        return message.id

    async def create_fragment(
        self,
        message_id: str,
        title: str,
        files: dict[str, str],
        framework: str,
        sandbox_id: str | None = None,
        sandbox_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        fragment = FragmentRecord(
            id=self._next_id("frag"),
            message_id=message_id,
            title=title,
            files=dict(files),
            framework=framework,
            sandbox_id=sandbox_id,
            sandbox_url=sandbox_url,
            metadata=dict(metadata or {}),
        )
        self.fragments[fragment.id] = fragment
        return fragment.id
