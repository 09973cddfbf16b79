# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Built-in model provider adapters.

These adapt existing LLM clients to the provider capability interface:
- ChatModelProvider wraps a client with a ``stream_chat`` method
  (Ollama, OpenAI-compatible and Anthropic wrappers all expose one)
- FunctionModelProvider wraps a plain async generator function
"""

import logging
from typing import Any, AsyncIterator, Callable, Optional

from victor_inline.cancellation import CancellationToken
from victor_inline.providers.base import ModelOptions, estimate_tokens

logger = logging.getLogger(__name__)


async def _close(stream: Any) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


def _chunk_text(chunk: Any) -> str:
    if isinstance(chunk, str):
        return chunk
    if hasattr(chunk, "content"):
        return chunk.content or ""
    if hasattr(chunk, "text"):
        return chunk.text or ""
    if isinstance(chunk, dict):
        return chunk.get("content", chunk.get("text", "")) or ""
    return ""


class ChatModelProvider:
    """Adapter for chat clients exposing ``stream_chat``.

    The client is expected to accept ``messages``, ``max_tokens``,
    ``temperature`` and ``stop`` keyword arguments and return an async
    iterator of chunks carrying a ``content`` attribute.
    """

    def __init__(
        self,
        client: Any,
        model: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ):
        """Initialize the adapter.

        Args:
            client: Chat client instance
            model: Model name (overrides ModelOptions.model when set)
            system_prompt: Optional system message sent before the prompt
        """
        if not hasattr(client, "stream_chat"):
            raise TypeError(f"{type(client).__name__} has no stream_chat method")
        self._client = client
        self._model = model
        self._system_prompt = system_prompt

    @property
    def name(self) -> str:
        return "chat"

    async def stream_completion(
        self,
        prompt: str,
        options: ModelOptions,
        cancellation_token: CancellationToken,
    ) -> AsyncIterator[str]:
        messages = []
        if self._system_prompt:
            messages.append({"role": "system", "content": self._system_prompt})
        messages.append({"role": "user", "content": prompt})

        kwargs: dict[str, Any] = {
            "messages": messages,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "stop": options.stop_sequences or None,
        }
        model = self._model or options.model
        if model:
            kwargs["model"] = model

        stream = self._client.stream_chat(**kwargs)
        try:
            async for chunk in stream:
                if cancellation_token.cancelled:
                    break
                text = _chunk_text(chunk)
                if text:
                    yield text
        finally:
            await _close(stream)

    def count_tokens(self, text: str) -> int:
        counter = getattr(self._client, "count_tokens", None)
        if counter is not None:
            return int(counter(text))
        return estimate_tokens(text)

    def __repr__(self) -> str:
        return f"ChatModelProvider(client={type(self._client).__name__}, model={self._model!r})"


class FunctionModelProvider:
    """Adapter for an async generator function ``fn(prompt, options)``."""

    def __init__(
        self,
        fn: Callable[[str, ModelOptions], AsyncIterator[str]],
        name: str = "function",
        token_counter: Optional[Callable[[str], int]] = None,
    ):
        self._fn = fn
        self._name = name
        self._token_counter = token_counter or estimate_tokens

    @property
    def name(self) -> str:
        return self._name

    async def stream_completion(
        self,
        prompt: str,
        options: ModelOptions,
        cancellation_token: CancellationToken,
    ) -> AsyncIterator[str]:
        stream = self._fn(prompt, options)
        try:
            async for delta in stream:
                if cancellation_token.cancelled:
                    break
                if delta:
                    yield delta
        finally:
            await _close(stream)

    def count_tokens(self, text: str) -> int:
        return self._token_counter(text)
