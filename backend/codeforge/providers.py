import logging
from typing import Any

from openai import AsyncOpenAI
from agents import ModelSettings, OpenAIChatCompletionsModel, set_tracing_disabled

from codeforge import config
from codeforge.fallback import AttemptPlan
from codeforge.models import ModelDescriptor, Transport, get_model


logger = logging.getLogger("codeforge.providers")

set_tracing_disabled(True)


def transport_model_name(descriptor: ModelDescriptor, transport: Transport) -> str:
    """Name of the model as the given transport expects it."""
    if transport == "gateway":
        return descriptor.gateway_id or descriptor.router_id or descriptor.id
    if transport == "router":
        return descriptor.router_id or descriptor.id
    return descriptor.id


def model_settings_for(descriptor: ModelDescriptor, shaped: bool = True) -> ModelSettings:
    """Sampling settings for a descriptor; unshaped requests carry temperature only."""
    if not shaped:
        return ModelSettings(temperature=descriptor.temperature)
    return ModelSettings(
        temperature=descriptor.temperature,
        frequency_penalty=descriptor.frequency_penalty,
        max_tokens=descriptor.max_tokens,
    )


class ProviderClients:
    """Holds one OpenAI-compatible client per transport.

    Clients are created in ``open()`` and closed in ``close()``; the object is
    also an async context manager. Passing explicit clients skips creation for
    those transports.
    """

    def __init__(self, clients: dict[str, Any] | None = None) -> None:
        self._clients: dict[str, Any] = dict(clients or {})
        self._owned: set[str] = set()
        self._opened = bool(clients)

    async def open(self) -> "ProviderClients":
        if self._opened:
            return self
        self._clients["gateway"] = AsyncOpenAI(
            api_key=config.gateway_api_key(),
            base_url=config.AI_GATEWAY_BASE_URL,
        )
        self._clients["router"] = AsyncOpenAI(
            api_key=config.openrouter_api_key(),
            base_url=config.OPENROUTER_BASE_URL,
        )
        self._clients["direct"] = AsyncOpenAI(
            api_key=config.cerebras_api_key(),
            base_url=config.CEREBRAS_BASE_URL,
        )
        self._owned = {"gateway", "router", "direct"}
        self._opened = True
        logger.info("provider clients opened: %s", ", ".join(sorted(self._clients)))
        return self

    async def close(self) -> None:
        for name in list(self._owned):
            client = self._clients.pop(name, None)
            if client is None:
                continue
            try:
                await client.close()
            except Exception as e:
                logger.warning("closing %s client failed: %s", name, str(e))
        self._owned.clear()
        self._opened = False

    async def __aenter__(self) -> "ProviderClients":
        return await self.open()

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def client_for(self, transport: Transport) -> Any:
        if not self._opened:
            raise RuntimeError("ProviderClients used before open()")
        try:
            return self._clients[transport]
        except KeyError:
            raise RuntimeError(f"No client configured for transport '{transport}'") from None

    def model_for(self, plan: AttemptPlan) -> OpenAIChatCompletionsModel:
        """Agents-SDK model bound to the client and name chosen by ``plan``."""
        descriptor = get_model(plan.model_id)
        return OpenAIChatCompletionsModel(
            model=transport_model_name(descriptor, plan.transport),
            openai_client=self.client_for(plan.transport),
        )

    async def complete(
        self,
        plan: AttemptPlan,
        system: str,
        prompt: str,
        temperature: float | None = None,
    ) -> str:
        """One non-streaming chat completion; returns the message text."""
        descriptor = get_model(plan.model_id)
        kwargs: dict[str, Any] = {
            "model": transport_model_name(descriptor, plan.transport),
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": descriptor.temperature if temperature is None else temperature,
        }
        if plan.shaped:
            if descriptor.max_tokens:
                kwargs["max_tokens"] = descriptor.max_tokens
            if descriptor.frequency_penalty is not None:
                kwargs["frequency_penalty"] = descriptor.frequency_penalty
        response = await self.client_for(plan.transport).chat.completions.create(**kwargs)
        choice = response.choices[0] if response.choices else None
        return (choice.message.content or "") if choice else ""
