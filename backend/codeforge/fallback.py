import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Literal, TypeVar

from pydantic import BaseModel, ConfigDict

from codeforge.models import Transport, get_model


logger = logging.getLogger("codeforge.fallback")

T = TypeVar("T")

RATE_LIMIT_WAIT_MS = 60_000
SERVER_ERROR_BASE_MS = 2_000
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MAX_RETRIES = 5

ErrorKind = Literal["rate_limit", "model_not_found", "invalid_request", "server", "timeout", "other"]

Sleep = Callable[[float], Awaitable[Any]]
StatusCallback = Callable[[str], Any]


RATE_LIMIT_PATTERNS = [
    "rate limit",
    "rate_limit",
    "tokens per minute",
    "requests per minute",
    "too many requests",
    "quota exceeded",
    "limit exceeded",
]
SERVER_ERROR_PATTERNS = [
    "server error",
    "server_error",
    'status_code":500',
    "internal error",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "encountered a server error",
    "ai_typevalidationerror",
    "type validation failed",
]
MODEL_NOT_FOUND_PATTERNS = [
    "model not found",
    "model_not_found",
    "does not exist",
    "unknown model",
    "no such model",
]
INVALID_REQUEST_PATTERNS = [
    "invalid request",
    "invalid_request",
    "bad request",
    "unsupported parameter",
    "unrecognized request argument",
]
TIMEOUT_PATTERNS = ["timeout", "timed out", "etimedout"]


def _status_code(*codes: int) -> re.Pattern[str]:
    alternatives = "|".join(str(c) for c in codes)
    return re.compile(rf"(?<!\d)(?:{alternatives})(?!\d)")


_RATE_LIMIT_CODES = _status_code(429)
_SERVER_CODES = _status_code(500, 502, 503, 504)
_NOT_FOUND_CODES = _status_code(404)
_INVALID_CODES = _status_code(400)


def _error_text(error: BaseException | str) -> str:
    return str(error).lower()


def is_rate_limit_error(error: BaseException | str) -> bool:
    text = _error_text(error)
    return any(p in text for p in RATE_LIMIT_PATTERNS) or bool(_RATE_LIMIT_CODES.search(text))


def is_server_error(error: BaseException | str) -> bool:
    text = _error_text(error)
    return any(p in text for p in SERVER_ERROR_PATTERNS) or bool(_SERVER_CODES.search(text))


def is_model_not_found_error(error: BaseException | str) -> bool:
    text = _error_text(error)
    return any(p in text for p in MODEL_NOT_FOUND_PATTERNS) or bool(_NOT_FOUND_CODES.search(text))


def is_invalid_request_error(error: BaseException | str) -> bool:
    text = _error_text(error)
    return any(p in text for p in INVALID_REQUEST_PATTERNS) or bool(_INVALID_CODES.search(text))


def is_timeout_error(error: BaseException | str) -> bool:
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return True
    text = _error_text(error)
    return any(p in text for p in TIMEOUT_PATTERNS)


def classify_error(error: BaseException | str) -> ErrorKind:
    """Map an error to a ladder branch using only its message text."""
    if is_rate_limit_error(error):
        return "rate_limit"
    if is_model_not_found_error(error):
        return "model_not_found"
    if is_invalid_request_error(error):
        return "invalid_request"
    if is_server_error(error):
        return "server"
    if is_timeout_error(error):
        return "timeout"
    return "other"


def retry_on_transient(error: BaseException) -> bool:
    return is_rate_limit_error(error) or is_timeout_error(error) or is_server_error(error)


class AttemptPlan(BaseModel):
    """How a single provider call should be made.

    Attributes:
        model_id: Logical model id to call.
        transport: Transport to reach it through.
        attempt: 1-based attempt number within the ladder.
        shaped: False when provider-specific request options must be omitted.
    """

    model_config = ConfigDict(frozen=True)

    model_id: str
    transport: Transport
    attempt: int
    shaped: bool = True


class FallbackChain:
    """Run provider calls through the retry/fallback ladder.

    Ladder, in order:
    - rate limit: switch to the gateway route once, then to the family's
      fallback model once, then wait RATE_LIMIT_WAIT_MS between attempts;
    - model not found on the gateway: return to the transport it came from;
    - invalid request on the first attempt: retry once without request shaping,
      not counted as an attempt;
    - server error: exponential backoff from SERVER_ERROR_BASE_MS;
    - anything else, or an exhausted attempt budget: re-raise.
    """

    def __init__(
        self,
        on_status: StatusCallback | None = None,
        sleep: Sleep = asyncio.sleep,
        rate_limit_wait_ms: int = RATE_LIMIT_WAIT_MS,
        server_backoff_ms: int = SERVER_ERROR_BASE_MS,
    ) -> None:
        self.on_status = on_status
        self._sleep = sleep
        self.rate_limit_wait_ms = rate_limit_wait_ms
        self.server_backoff_ms = server_backoff_ms

    def _status(self, message: str) -> None:
        logger.info(message)
        if self.on_status is not None:
            self.on_status(message)

    async def _wait(self, wait_ms: int) -> None:
        await self._sleep(wait_ms / 1000.0)

    async def execute(
        self,
        model_id: str,
        work: Callable[[AttemptPlan], Awaitable[T]],
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> T:
        family = get_model(model_id)
        current_model = model_id
        transport: Transport = family.transport
        previous_transport: Transport | None = None
        gateway_tried: set[str] = set()
        fallback_tried = False
        reshaped = False
        shaped = True
        attempt = 1

        while True:
            plan = AttemptPlan(
                model_id=current_model, transport=transport, attempt=attempt, shaped=shaped
            )
            try:
                return await work(plan)
            except Exception as err:
                kind = classify_error(err)
                logger.warning(
                    "attempt %d/%d on %s via %s failed (%s): %s",
                    attempt,
                    max_attempts,
                    current_model,
                    transport,
                    kind,
                    str(err)[:300],
                )

                if kind == "invalid_request" and attempt == 1 and not reshaped:
                    reshaped = True
                    shaped = False
                    self._status(f"Invalid request for {current_model}, retrying without provider options...")
                    continue

                if attempt >= max_attempts:
                    raise

                if kind == "rate_limit":
                    descriptor = get_model(current_model)
                    if (
                        descriptor.gateway_id
                        and transport != "gateway"
                        and current_model not in gateway_tried
                    ):
                        gateway_tried.add(current_model)
                        previous_transport = transport
                        transport = "gateway"
                        self._status(f"Rate limit hit on {current_model}, switching to AI Gateway...")
                    elif family.fallback_model and not fallback_tried:
                        fallback_tried = True
                        current_model = family.fallback_model
                        transport = get_model(current_model).transport
                        previous_transport = None
                        self._status(f"Rate limit persists, falling back to {current_model}...")
                    else:
                        self._status(
                            f"Rate limit hit. Waiting {self.rate_limit_wait_ms // 1000}s before retry "
                            f"(attempt {attempt + 1}/{max_attempts})..."
                        )
                        await self._wait(self.rate_limit_wait_ms)
                elif kind == "model_not_found" and transport == "gateway" and previous_transport:
                    self._status(f"{current_model} unavailable on AI Gateway, returning to {previous_transport}...")
                    transport = previous_transport
                    previous_transport = None
                elif kind == "server":
                    backoff = self.server_backoff_ms * 2 ** (attempt - 1)
                    self._status(
                        f"Server error. Retrying in {backoff / 1000:g}s "
                        f"(attempt {attempt + 1}/{max_attempts})..."
                    )
                    await self._wait(backoff)
                else:
                    raise

                attempt += 1


async def with_rate_limit_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    sleep: Sleep = asyncio.sleep,
    on_status: StatusCallback | None = None,
) -> T:
    """Retry a generic call on rate-limit and server errors.

    Rate limits wait a fixed RATE_LIMIT_WAIT_MS; server errors back off
    exponentially. The last error is re-raised after ``max_retries`` attempts.
    """
    for attempt in range(1, max_retries + 1):
        try:
            return await fn()
        except Exception as err:
            if attempt >= max_retries:
                raise
            if is_rate_limit_error(err):
                wait_ms = RATE_LIMIT_WAIT_MS
            elif is_server_error(err):
                wait_ms = SERVER_ERROR_BASE_MS * 2 ** (attempt - 1)
            else:
                raise
            message = f"Retrying in {wait_ms // 1000}s (attempt {attempt + 1}/{max_retries}): {str(err)[:120]}"
            logger.warning(message)
            if on_status is not None:
                on_status(message)
            await sleep(wait_ms / 1000.0)
    raise RuntimeError("unreachable")


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay_ms: int = 1_000,
    max_delay_ms: int = 30_000,
    backoff_multiplier: float = 2,
    retry_if: Callable[[BaseException], bool] | None = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    delay = initial_delay_ms
    for attempt in range(1, max_attempts + 1):
        try:
            return await fn()
        except Exception as err:
            if attempt >= max_attempts or (retry_if is not None and not retry_if(err)):
                raise
            logger.info("retry %d/%d in %dms: %s", attempt, max_attempts, delay, str(err)[:200])
            await sleep(delay / 1000.0)
            delay = min(delay * backoff_multiplier, max_delay_ms)
    raise RuntimeError("unreachable")
