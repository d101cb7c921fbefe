from typing import Literal

from pydantic import BaseModel

from codeforge.environment.base import EnvironmentKind
from codeforge.models import FRAMEWORKS


TaskType = Literal["preview", "native-build", "full-dev"]

BROWSER_FRAMEWORKS: tuple[str, ...] = FRAMEWORKS


class RuntimeConfig(BaseModel):
    kind: EnvironmentKind
    reason: str


def select_runtime(
    framework: str,
    task_type: TaskType = "preview",
    browser_supported: bool = True,
) -> RuntimeConfig:
    """Choose where a run should execute."""
    if not browser_supported:
        return RuntimeConfig(
            kind="remote-sandbox",
            reason="Browser cannot host an in-browser runtime (missing SharedArrayBuffer)",
        )
    if task_type != "preview":
        return RuntimeConfig(
            kind="remote-sandbox",
            reason=f"{task_type} tasks need a cloud sandbox with full OS access",
        )
    if framework in BROWSER_FRAMEWORKS:
        return RuntimeConfig(
            kind="in-browser",
            reason=f"{framework} runs fully in the browser for instant preview",
        )
    return RuntimeConfig(
        kind="remote-sandbox",
        reason=f"Framework {framework} is not supported by the in-browser runtime",
    )
