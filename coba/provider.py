"""LLM provider selection and streaming through LiteLLM."""

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

import litellm

from .errors import AgentError, ConfigError
from .messages import AIMessage, Message, ToolCallChunk, to_llm_message

logger = logging.getLogger(__name__)

OLLAMA_DEFAULT_URL = "http://localhost:11434"
LMSTUDIO_DEFAULT_URL = "http://127.0.0.1:1234"


@dataclass(frozen=True)
class ProviderOptions:
    """Which model to talk to, and how."""

    provider: str
    model: str
    context_size: int | None = None
    api_key: str | None = None
    api_url: str | None = None
    disable_agent_rules: bool = False
    max_messages: int | None = None

    def cache_key(self) -> tuple:
        return (self.provider, self.model, self.context_size, self.api_url, self.api_key)

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, obj: dict) -> "ProviderOptions":
        names = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in obj.items() if k in names})


@dataclass(frozen=True)
class LLMClient:
    """A configured model handle. ``bind_tools`` returns a copy with tools attached."""

    model: str
    completion_kwargs: dict = field(default_factory=dict)
    transform_tool_messages: bool = False
    tools: tuple = ()

    def bind_tools(self, schemas: list[dict]) -> "LLMClient":
        return dataclasses.replace(self, tools=tuple(schemas))

    async def stream(
        self, messages: list[Message], *, metadata: dict | None = None
    ) -> AsyncIterator[AIMessage]:
        """Start a streaming completion and return an iterator of AI chunks.

        Raises:
            AgentError: If the request cannot be started.
        """
        litellm.suppress_debug_info = True
        kwargs = dict(
            model=self.model,
            messages=[to_llm_message(m) for m in messages],
            stream=True,
            **self.completion_kwargs,
        )
        if self.tools:
            kwargs["tools"] = list(self.tools)
            kwargs["tool_choice"] = "auto"
        if metadata:
            kwargs["metadata"] = metadata

        logger.debug("Calling model %s with %d messages", self.model, len(messages))
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise AgentError(f"LLM call failed: {e}") from e
        return _iter_chunks(response)


async def _iter_chunks(response) -> AsyncIterator[AIMessage]:
    async for chunk in response:
        msg = chunk_to_message(chunk)
        if msg is not None:
            yield msg


def chunk_to_message(chunk) -> AIMessage | None:
    """Convert one LiteLLM stream chunk (OpenAI delta format) to a partial AI message."""
    choices = getattr(chunk, "choices", None)
    if not choices:
        return None
    delta = choices[0].delta
    if delta is None:
        return None
    text = getattr(delta, "content", None) or ""
    tool_call_chunks = []
    for position, tc in enumerate(getattr(delta, "tool_calls", None) or []):
        fn = getattr(tc, "function", None)
        index = getattr(tc, "index", None)
        tool_call_chunks.append(
            ToolCallChunk(
                index=index if index is not None else position,
                id=getattr(tc, "id", None) or None,
                name=getattr(fn, "name", None) or None,
                args=getattr(fn, "arguments", None) or "",
            )
        )
    if not text and not tool_call_chunks:
        return None
    return AIMessage(text=text, tool_call_chunks=tool_call_chunks)


# ---------------------------------------------------------------------------
# Provider table
# ---------------------------------------------------------------------------


def _api_key(options: ProviderOptions, env_var: str) -> str:
    key = options.api_key or os.environ.get(env_var)
    if not key:
        raise ConfigError(
            f"no API key for provider {options.provider!r}: "
            f"pass --api-key or set {env_var}"
        )
    return key


def _ollama(options: ProviderOptions) -> LLMClient:
    kwargs: dict = {"api_base": options.api_url or OLLAMA_DEFAULT_URL}
    if options.context_size:
        kwargs["num_ctx"] = options.context_size
    return LLMClient(
        model=f"ollama_chat/{options.model}",
        completion_kwargs=kwargs,
        transform_tool_messages=True,
    )


def _lmstudio(options: ProviderOptions) -> LLMClient:
    base_url = (options.api_url or LMSTUDIO_DEFAULT_URL).rstrip("/")
    if not base_url.endswith("/v1"):
        base_url += "/v1"
    return LLMClient(
        model=f"openai/{options.model}",
        completion_kwargs={"api_base": base_url, "api_key": options.api_key or "lm-studio"},
    )


def _openai(options: ProviderOptions) -> LLMClient:
    kwargs = {"api_key": _api_key(options, "OPENAI_API_KEY")}
    if options.api_url:
        kwargs["api_base"] = options.api_url
    return LLMClient(model=f"openai/{options.model}", completion_kwargs=kwargs)


def _anthropic(options: ProviderOptions) -> LLMClient:
    kwargs = {"api_key": _api_key(options, "ANTHROPIC_API_KEY")}
    if options.api_url:
        kwargs["api_base"] = options.api_url
    return LLMClient(model=f"anthropic/{options.model}", completion_kwargs=kwargs)


def _openrouter(options: ProviderOptions) -> LLMClient:
    # Strip the LiteLLM prefix only when it is doubled ("openrouter/openrouter/free");
    # "openrouter/free" names an org, not the prefix.
    model_id = options.model
    if model_id.startswith("openrouter/openrouter/"):
        model_id = model_id[len("openrouter/") :]
    kwargs = {"api_key": _api_key(options, "OPENROUTER_API_KEY")}
    if options.api_url:
        kwargs["api_base"] = options.api_url
    return LLMClient(model=f"openrouter/{model_id}", completion_kwargs=kwargs)


def _huggingface(options: ProviderOptions) -> LLMClient:
    bare_id = options.model.removeprefix("huggingface/")
    kwargs = {"api_key": _api_key(options, "HF_TOKEN")}
    if options.api_url:
        kwargs["api_base"] = options.api_url
    return LLMClient(model=f"huggingface/{bare_id}", completion_kwargs=kwargs)


PROVIDERS: dict[str, Callable[[ProviderOptions], LLMClient]] = {
    "ollama": _ollama,
    "lmstudio": _lmstudio,
    "openai": _openai,
    "anthropic": _anthropic,
    "openrouter": _openrouter,
    "huggingface": _huggingface,
}


class ProviderClientCache:
    """Holds the single active client, rebuilt only when the options change."""

    def __init__(self, providers: dict[str, Callable[[ProviderOptions], LLMClient]] | None = None):
        self._providers = PROVIDERS if providers is None else providers
        self._key: tuple | None = None
        self._client: LLMClient | None = None

    def get_client(self, options: ProviderOptions) -> LLMClient:
        """Return the client for ``options``.

        Raises:
            ConfigError: For an unknown provider or missing credentials.
        """
        key = options.cache_key()
        if self._client is not None and key == self._key:
            return self._client
        factory = self._providers.get(options.provider)
        if factory is None:
            known = ", ".join(sorted(self._providers))
            raise ConfigError(f"Unknown provider {options.provider!r} (expected one of: {known})")
        client = factory(options)
        logger.debug("Created client for %s/%s", options.provider, options.model)
        self._key, self._client = key, client
        return client
