import os
from dotenv import load_dotenv

current_dir = os.path.dirname(os.path.abspath(__file__))
backend_dir = os.path.dirname(current_dir)
# Load env from backend/.env first, then fallback to codeforge/.env without overriding
load_dotenv(os.path.join(backend_dir, ".env"), override=False)
load_dotenv(os.path.join(current_dir, ".env"), override=False)


"""Provider configuration.

Three transports are supported:
- Direct: a Cerebras-compatible endpoint (CEREBRAS_API_KEY, CEREBRAS_BASE_URL).
- Gateway: Vercel AI Gateway (AI_GATEWAY_API_KEY or VERCEL_OIDC_TOKEN).
- Router: OpenRouter (OPENROUTER_API_KEY, OPENROUTER_BASE_URL).
"""

AI_GATEWAY_BASE_URL: str = os.getenv("AI_GATEWAY_BASE_URL") or "https://ai-gateway.vercel.sh/v1"
OPENROUTER_BASE_URL: str = os.getenv("OPENROUTER_BASE_URL") or "https://openrouter.ai/api/v1"
CEREBRAS_BASE_URL: str = os.getenv("CEREBRAS_BASE_URL") or "https://api.cerebras.ai/v1"


def gateway_api_key() -> str | None:
    return os.getenv("AI_GATEWAY_API_KEY") or os.getenv("VERCEL_OIDC_TOKEN")


def openrouter_api_key() -> str | None:
    return os.getenv("OPENROUTER_API_KEY")


def cerebras_api_key() -> str | None:
    return os.getenv("CEREBRAS_API_KEY")


# Idle TTL for cached execution environments (seconds)
ENV_TTL_SECONDS: int = int(os.getenv("CODEFORGE_ENV_TTL_SECONDS", "600"))
# TTL for cached model classification responses (seconds)
CACHE_TTL_SECONDS: int = int(os.getenv("CODEFORGE_CACHE_TTL_SECONDS", "1800"))
# Upper bound on tool-use iterations for one generation pass
MAX_TURNS: int = int(os.getenv("CODEFORGE_MAX_TURNS", "8"))
# Lifetime requested for remote sandboxes (milliseconds)
SANDBOX_TIMEOUT_MS: int = int(os.getenv("CODEFORGE_SANDBOX_TIMEOUT_MS", "600000"))
