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

"""Configuration for the inline completion pipeline.

All timing and sizing constants of the pipeline live here so they can be
tuned per deployment. Configuration may be built in code, from a mapping
or from a YAML file:

```yaml
inline_completion:
  debounce_ms: 75
  token_budget: 1024
  per_source_timeout_ms: 150
  max_cache_entries: 256
  stop_sequences: ["\\n\\n\\n", "```"]
```
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from victor_inline.protocol import SourceKind

logger = logging.getLogger(__name__)

CONFIG_SECTION = "inline_completion"

DEFAULT_SOURCE_PRIORITIES: Dict[str, int] = {
    SourceKind.RECENT_EDIT.value: 0,
    SourceKind.OPEN_FILE.value: 1,
    SourceKind.DIFF.value: 2,
    SourceKind.RETRIEVAL.value: 3,
    SourceKind.CLIPBOARD.value: 4,
}


class InlineCompletionConfig(BaseModel):
    """Read-only settings consumed by every pipeline stage."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    enabled: bool = Field(default=True, description="Master switch for inline completions")

    # Gate
    debounce_ms: float = Field(
        default=75.0, ge=0, description="Quiet period after an edit before an attempt starts"
    )
    min_line_chars: int = Field(
        default=2,
        ge=0,
        description="Minimum non-blank characters before the cursor on its line (automatic triggers)",
    )
    trigger_characters: List[str] = Field(
        default_factory=lambda: [".", "(", ",", "="],
        description="Characters that trigger even on short lines",
    )
    syntax_classification: bool = Field(
        default=True,
        description="Classify the cursor region with tree-sitter when the editor gives no hint",
    )

    # Context assembly
    token_budget: int = Field(default=1024, ge=0, description="Token budget for context snippets")
    per_source_timeout_ms: float = Field(
        default=150.0, gt=0, description="Default timeout for each context source query"
    )
    source_timeouts_ms: Dict[str, float] = Field(
        default_factory=dict, description="Per-source timeout overrides keyed by source name"
    )
    source_priorities: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_SOURCE_PRIORITIES),
        description="Tie-break priority per source kind (lower wins)",
    )

    # Cache
    max_cache_entries: int = Field(default=256, ge=1, description="Cache capacity")
    cache_ttl_seconds: float = Field(
        default=0.0, ge=0, description="Entry time-to-live in seconds (0 disables expiry)"
    )
    invalidation_similarity: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Entries whose cursor span similarity drops below this are invalidated",
    )
    invalidation_window_chars: int = Field(
        default=128, ge=1, description="Characters on each side of the cursor compared for invalidation"
    )

    # Model streaming
    stop_sequences: List[str] = Field(
        default_factory=lambda: ["\n\n\n", "```", "<|endoftext|>"],
        description="Sequences that end a completion",
    )
    max_output_tokens: int = Field(default=128, ge=1, description="Max tokens to generate")
    temperature: float = Field(default=0.0, ge=0.0, le=2.0, description="Sampling temperature")
    provider: str = Field(default="chat", description="Model provider identifier in the registry")
    model: Optional[str] = Field(default=None, description="Model name passed to the provider")
    fim_template: str = Field(default="default", description="Fill-in-the-middle template name")
    max_context_lines: int = Field(
        default=100, ge=1, description="Prefix/suffix lines kept in the prompt"
    )

    # Postprocessing
    staleness_window_chars: int = Field(
        default=64, ge=1, description="Characters before the cursor that must be unchanged"
    )
    max_suggestion_chars: int = Field(default=2400, ge=1, description="Suggestion length cap")

    @field_validator("stop_sequences", "trigger_characters")
    @classmethod
    def _drop_empty(cls, value: List[str]) -> List[str]:
        return [v for v in value if v]

    @field_validator("source_priorities")
    @classmethod
    def _merge_priorities(cls, value: Dict[str, int]) -> Dict[str, int]:
        merged = dict(DEFAULT_SOURCE_PRIORITIES)
        merged.update(value)
        return merged

    def source_timeout(self, source_name: str) -> float:
        """Timeout in milliseconds for a named source."""
        return self.source_timeouts_ms.get(source_name, self.per_source_timeout_ms)

    def source_priority(self, kind: Union[SourceKind, str]) -> int:
        key = kind.value if isinstance(kind, SourceKind) else str(kind)
        return self.source_priorities.get(key, len(self.source_priorities))

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "InlineCompletionConfig":
        """Build config from a mapping, with or without the section key."""
        if not data:
            return cls()
        section = data.get(CONFIG_SECTION, data)
        if not isinstance(section, Mapping):
            raise ValueError(f"'{CONFIG_SECTION}' must be a mapping, got {type(section).__name__}")
        return cls.model_validate(dict(section))


def load_config(path: Union[str, Path]) -> InlineCompletionConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML file

    Returns:
        Parsed configuration (defaults if the file is empty)

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file content is not a valid configuration
    """
    path = Path(path)
    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e

    if data is not None and not isinstance(data, Mapping):
        raise ValueError(f"Expected a mapping at the top of {path}")

    config = InlineCompletionConfig.from_mapping(data)
    logger.debug(f"Loaded inline completion config from {path}")
    return config
