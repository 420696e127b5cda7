"""Model backends.

The task loop only needs a *reply provider*: an async callable taking the
message list (and an optional ``on_chunk`` callback) and returning the full
reply text. ``LLMProvider.as_reply_provider`` adapts a backend to that shape.
"""

import json
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from tool_loop.config import ModelConfig
from tool_loop.exceptions import ConfigurationError, LLMAPIError, LLMError
from tool_loop.logging import get_logger

log = get_logger(__name__)

OLLAMA_DEFAULT_URL = "http://127.0.0.1:11434"
OLLAMA_CHAT_PATH = "/api/chat"

ChunkCallback = Callable[[str], Any]
ModelReplyProvider = Callable[..., Awaitable[str]]


@dataclass
class Message:
    role: str  # system | user | assistant
    content: str


@dataclass
class LLMResponse:
    content: str
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


class LLMProvider(ABC):
    """A chat backend with one-shot and streamed completion."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse: ...

    @abstractmethod
    def complete_streaming(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]: ...

    async def close(self) -> None:
        return None

    def as_reply_provider(self, stream: bool = True) -> ModelReplyProvider:
        """Wrap this backend as ``async (messages, on_chunk=None) -> str``.

        With ``stream=False`` the whole reply is passed to ``on_chunk`` once.
        """

        async def reply(messages: list[Message], on_chunk: ChunkCallback | None = None) -> str:
            if stream:
                collected: list[str] = []
                async for piece in self.complete_streaming(messages):
                    collected.append(piece)
                    if on_chunk is not None:
                        on_chunk(piece)
                return "".join(collected)

            text = (await self.complete(messages)).content
            if text and on_chunk is not None:
                on_chunk(text)
            return text

        return reply


def _message_payload(message: Message | dict[str, Any]) -> dict[str, str]:
    if isinstance(message, dict):
        return {"role": message.get("role") or "user", "content": message.get("content") or ""}
    return {"role": message.role or "user", "content": message.content or ""}


class OllamaProvider(LLMProvider):
    """Talks to Ollama's native ``/api/chat`` endpoint over httpx.

    ``client`` lets callers (and tests) supply their own ``httpx.AsyncClient``,
    e.g. one built on ``httpx.MockTransport``.
    """

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_DEFAULT_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.client = client if client is not None else httpx.AsyncClient(timeout=120.0, follow_redirects=True)

    @property
    def chat_url(self) -> str:
        return self.base_url + OLLAMA_CHAT_PATH

    def _request_body(
        self,
        messages: list[Message],
        *,
        stream: bool,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        options: dict[str, Any] = {"temperature": self.temperature if temperature is None else temperature}
        token_cap = max_tokens or self.max_tokens
        if token_cap:
            options["num_predict"] = token_cap
        return {
            "model": self.model,
            "messages": [_message_payload(m) for m in messages],
            "stream": stream,
            "options": options,
        }

    def _request_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def complete(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        body = self._request_body(messages, stream=False, temperature=temperature, max_tokens=max_tokens)
        log.debug("Ollama chat request", model=self.model, messages=len(body["messages"]))
        try:
            response = await self.client.post(self.chat_url, json=body, headers=self._request_headers())
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama request failed: {e}") from e

        if response.status_code >= 400:
            raise LLMAPIError(
                f"Ollama returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except json.JSONDecodeError as e:
            raise LLMError(f"Ollama sent a non-JSON body: {e}") from e

        prompt_tokens = int(payload.get("prompt_eval_count") or 0)
        completion_tokens = int(payload.get("eval_count") or 0)
        return LLMResponse(
            content=(payload.get("message") or {}).get("content", ""),
            model=self.model,
            usage={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        )

    async def complete_streaming(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Yield reply fragments from Ollama's newline-delimited JSON stream."""
        body = self._request_body(messages, stream=True, temperature=temperature, max_tokens=max_tokens)
        try:
            async with self.client.stream(
                "POST", self.chat_url, json=body, headers=self._request_headers()
            ) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Ollama returned {response.status_code}: {detail}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        event = json.loads(line)
                    except json.JSONDecodeError:
                        log.debug("Skipping undecodable stream line", line=line[:80])
                        continue
                    piece = (event.get("message") or {}).get("content")
                    if piece:
                        yield piece
                    if event.get("done"):
                        return
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama stream failed: {e}") from e

    async def close(self) -> None:
        await self.client.aclose()


def create_provider(config: ModelConfig) -> LLMProvider:
    """Build the backend named by ``config.provider``."""
    if config.provider != "ollama":
        raise ConfigurationError(
            f"Provider '{config.provider}' not supported. Use 'ollama' or pass a reply provider."
        )
    return OllamaProvider(
        model=config.model,
        base_url=config.base_url or OLLAMA_DEFAULT_URL,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        api_key=config.api_key or None,
    )


__all__ = [
    "ChunkCallback",
    "LLMProvider",
    "LLMResponse",
    "Message",
    "ModelReplyProvider",
    "OllamaProvider",
    "create_provider",
]
