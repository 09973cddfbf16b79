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

"""Inline completion protocol types.

Defines the data structures exchanged between the editor, the
completion pipeline and its collaborators.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class TriggerReason(str, Enum):
    """How a completion attempt was triggered."""

    AUTOMATIC = "automatic"  # Typing in the editor
    MANUAL = "manual"  # Explicit user request (keybinding)


class SourceKind(str, Enum):
    """Where a context snippet came from."""

    RECENT_EDIT = "recentEdit"
    OPEN_FILE = "openFile"
    DIFF = "diff"
    RETRIEVAL = "retrieval"
    CLIPBOARD = "clipboard"


class SyntaxRegion(str, Enum):
    """Syntactic region the cursor sits in."""

    CODE = "code"
    STRING = "string"
    COMMENT = "comment"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class EditEvent:
    """An edit reported by the editor integration."""

    document_uri: str
    cursor_offset: int
    prefix_text: str
    suffix_text: str
    trigger_reason: TriggerReason = TriggerReason.AUTOMATIC
    timestamp: float = field(default_factory=time.time)
    session_id: Optional[str] = None  # Logical editor session (defaults to the document)
    inserted_text: str = ""
    deleted_length: int = 0

    @property
    def session_key(self) -> str:
        """Key identifying the logical editor session of this edit."""
        return self.session_id or self.document_uri

    @property
    def document_text(self) -> str:
        return self.prefix_text + self.suffix_text

    @property
    def line_prefix(self) -> str:
        """Text between the start of the cursor line and the cursor."""
        return self.prefix_text.rsplit("\n", 1)[-1]

    @property
    def line_suffix(self) -> str:
        """Text between the cursor and the end of the cursor line."""
        return self.suffix_text.split("\n", 1)[0]

    @property
    def is_pure_deletion(self) -> bool:
        return not self.inserted_text and self.deleted_length > 0

    @property
    def is_manual(self) -> bool:
        return self.trigger_reason == TriggerReason.MANUAL


@dataclass
class EditorState:
    """Editor-side hints accompanying an edit event."""

    syntax_region: Optional[SyntaxRegion] = None
    language: Optional[str] = None


@dataclass(frozen=True)
class CompletionRequest:
    """A single completion attempt. Immutable once created."""

    document_uri: str
    cursor_offset: int
    prefix_text: str
    suffix_text: str
    trigger_reason: TriggerReason = TriggerReason.AUTOMATIC
    created_at: float = field(default_factory=time.time)
    language: str = "text"

    @classmethod
    def from_event(cls, event: EditEvent, language: str = "text") -> "CompletionRequest":
        """Build a request from an edit event."""
        return cls(
            document_uri=event.document_uri,
            cursor_offset=event.cursor_offset,
            prefix_text=event.prefix_text,
            suffix_text=event.suffix_text,
            trigger_reason=event.trigger_reason,
            language=language,
        )


@dataclass
class ContextSnippet:
    """A candidate piece of context for a completion prompt."""

    source_kind: SourceKind
    content: str
    relevance_score: float
    token_count: int = 0
    recency: float = 0.0  # Timestamp, newer wins ties
    origin: Optional[str] = None  # URI or path the snippet was taken from


@dataclass(frozen=True)
class OffsetRange:
    """Character offset range in a document (end exclusive)."""

    start: int
    end: int

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(f"Invalid range: {self.start}..{self.end}")


@dataclass(frozen=True)
class Suggestion:
    """A completion ready to be shown as ghost text."""

    session_id: str
    text: str
    replace_range: OffsetRange
    document_uri: str = ""
    from_cache: bool = False


@dataclass
class DocumentState:
    """Latest known content of a document."""

    uri: str
    text: str
    version: int = 0
