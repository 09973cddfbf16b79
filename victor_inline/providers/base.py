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

"""Model provider capability interface.

A model provider exposes exactly two capabilities: streaming a
completion for a prompt and counting tokens. Concrete backends are
looked up by identifier in the provider registry.
"""

from dataclasses import dataclass, field
from typing import AsyncIterator, Optional, Protocol, runtime_checkable

from victor_inline.cancellation import CancellationToken


def estimate_tokens(text: str) -> int:
    """Approximate token count (about four characters per token)."""
    if not text:
        return 0
    return max(1, (len(text) + 3) // 4)


@dataclass
class ModelOptions:
    """Generation options passed to a model provider."""

    max_tokens: int = 128
    temperature: float = 0.0
    stop_sequences: list[str] = field(default_factory=list)
    model: Optional[str] = None


@runtime_checkable
class ModelProvider(Protocol):
    """Protocol for model providers.

    Providers must stop producing deltas promptly once the cancellation
    token is cancelled, and abort the underlying call when the returned
    iterator is closed.
    """

    @property
    def name(self) -> str:
        """Unique identifier for this provider."""
        ...

    def stream_completion(
        self,
        prompt: str,
        options: ModelOptions,
        cancellation_token: CancellationToken,
    ) -> AsyncIterator[str]:
        """Stream completion text deltas.

        Args:
            prompt: Fully assembled prompt
            options: Generation options
            cancellation_token: Token cancelled when the result is no longer wanted

        Yields:
            Text deltas as they're generated
        """
        ...

    def count_tokens(self, text: str) -> int:
        """Count tokens in text using the model's tokenizer."""
        ...
