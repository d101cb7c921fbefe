import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


Framework = Literal["nextjs", "angular", "react", "vue", "svelte"]
FRAMEWORKS: tuple[str, ...] = ("nextjs", "angular", "react", "vue", "svelte")
DEFAULT_FRAMEWORK: Framework = "nextjs"

Transport = Literal["direct", "gateway", "router"]


def get_framework_port(framework: str) -> int:
    if framework == "nextjs":
        return 3000
    if framework == "angular":
        return 4200
    return 5173


def get_dev_server_command(framework: str) -> str:
    if framework == "nextjs":
        return "npm run dev"
    if framework == "angular":
        return "npm run start -- --host 0.0.0.0 --port 4200"
    return "npm run dev -- --host 0.0.0.0 --port 5173"


def get_template(framework: str) -> str:
    return "codeforge-nextjs" if framework == "nextjs" else f"codeforge-{framework}"


def build_artifact_dirs(framework: str) -> list[str]:
    if framework == "nextjs":
        return [".next"]
    if framework == "svelte":
        return [".svelte-kit"]
    return ["dist"]


class ModelDescriptor(BaseModel):
    """Static configuration for one logical model id."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    provider: str
    description: str = ""
    transport: Transport = "router"
    temperature: float = 0.7
    frequency_penalty: float | None = None
    max_tokens: int | None = None
    capabilities: frozenset[str] = Field(default_factory=frozenset)
    supports_research: bool = False
    # Model name on the router transport
    router_id: str | None = None
    # Model name on the gateway when the default transport is rate limited
    gateway_id: str | None = None
    # Alternate model id tried once both transports are rate limited
    fallback_model: str | None = None
    subagent_only: bool = False


MODEL_CONFIGS: dict[str, ModelDescriptor] = {
    "claude-haiku-4.5": ModelDescriptor(
        id="claude-haiku-4.5",
        name="Claude Haiku 4.5",
        provider="anthropic",
        description="Fast and efficient for most coding tasks",
        transport="router",
        router_id="anthropic/claude-haiku-4.5",
        temperature=0.7,
        frequency_penalty=0.5,
        capabilities=frozenset({"tools", "streaming"}),
    ),
    "gpt-5.1-codex": ModelDescriptor(
        id="gpt-5.1-codex",
        name="GPT-5.1 Codex",
        provider="openai",
        description="OpenAI's flagship model for complex tasks",
        transport="router",
        router_id="openai/gpt-5.1-codex",
        temperature=0.7,
        frequency_penalty=0.5,
        capabilities=frozenset({"tools", "streaming"}),
    ),
    "zai-glm-4.7": ModelDescriptor(
        id="zai-glm-4.7",
        name="Z-AI GLM 4.7",
        provider="cerebras",
        description="Ultra-fast inference with subagent research capabilities",
        transport="direct",
        temperature=0.7,
        max_tokens=4096,
        capabilities=frozenset({"tools", "streaming", "subagents"}),
        supports_research=True,
        gateway_id="zai/glm-4.7",
        fallback_model="claude-haiku-4.5",
    ),
    "kimi-k2.5": ModelDescriptor(
        id="kimi-k2.5",
        name="Kimi K2.5",
        provider="moonshot",
        description="Specialized for coding tasks",
        transport="router",
        router_id="moonshotai/kimi-k2.5",
        temperature=0.7,
        frequency_penalty=0.5,
        capabilities=frozenset({"tools", "streaming"}),
    ),
    "gemini-3-pro-preview": ModelDescriptor(
        id="gemini-3-pro-preview",
        name="Gemini 3 Pro",
        provider="google",
        description="Google's most intelligent model with state-of-the-art reasoning",
        transport="router",
        router_id="google/gemini-3-pro-preview",
        temperature=0.7,
        capabilities=frozenset({"tools", "streaming"}),
    ),
    "morph/morph-v3-large": ModelDescriptor(
        id="morph/morph-v3-large",
        name="Morph V3 Large",
        provider="openrouter",
        description="Fast research subagent for documentation lookup",
        transport="router",
        temperature=0.5,
        max_tokens=2048,
        capabilities=frozenset({"streaming"}),
        subagent_only=True,
    ),
}

DEFAULT_MODEL = "zai-glm-4.7"
SUBAGENT_MODEL = "morph/morph-v3-large"
# Lightweight classifier used for framework detection
CLASSIFIER_MODEL = "google/gemini-2.5-flash-lite"


def get_model(model_id: str) -> ModelDescriptor:
    try:
        return MODEL_CONFIGS[model_id]
    except KeyError:
        # Unknown ids are routed through the router with conservative defaults
        return ModelDescriptor(id=model_id, name=model_id, provider="openrouter")


# Ordered selection rules; the first matching rule wins.
ENTERPRISE_PATTERNS: list[str] = [
    "enterprise",
    "complex",
    "advanced",
    "architecture",
    "large-scale",
    "production-ready",
    "scalable",
]
SELECTION_RULES: list[tuple[str, re.Pattern[str]]] = [
    ("gpt-5.1-codex", re.compile(r"\bgpt-?5\b|\bcodex\b", re.IGNORECASE)),
    ("gemini-3-pro-preview", re.compile(r"\bgemini\b", re.IGNORECASE)),
    ("kimi-k2.5", re.compile(r"\bkimi\b", re.IGNORECASE)),
]
LONG_PROMPT_CHARS = 2000


def select_model_for_task(prompt: str, preference: str | None = None) -> str:
    """Pick a model id for a request.

    An explicit preference naming a known, non subagent-only model wins. Otherwise
    enterprise-sounding or very long prompts go to Claude Haiku, explicit model
    mentions are honoured, and everything else uses the default model.
    """
    if preference and preference != "auto":
        descriptor = MODEL_CONFIGS.get(preference)
        if descriptor is not None and not descriptor.subagent_only:
            return preference

    lowered = (prompt or "").lower()
    if len(lowered) > LONG_PROMPT_CHARS or any(p in lowered for p in ENTERPRISE_PATTERNS):
        return "claude-haiku-4.5"
    for model_id, pattern in SELECTION_RULES:
        if pattern.search(lowered):
            return model_id
    return DEFAULT_MODEL


def list_models() -> list[dict[str, str]]:
    return [
        {"id": m.id, "name": m.name, "provider": m.provider, "description": m.description}
        for m in MODEL_CONFIGS.values()
        if not m.subagent_only
    ]
