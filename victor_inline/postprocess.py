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

"""Turns raw streamed text into a suggestion.

Processing is idempotent: feeding a processed completion back in
returns it unchanged. Cached completions are stored processed, so a
cache hit goes through the same transformation safely.
"""

import logging
import re
from typing import List, Optional

from victor_inline.config import InlineCompletionConfig
from victor_inline.errors import PostprocessRejected
from victor_inline.prompt import END_TOKENS, FIM_TOKENS
from victor_inline.protocol import CompletionRequest, DocumentState, OffsetRange, Suggestion
from victor_inline.stream import StreamSession

logger = logging.getLogger(__name__)

OPENERS = {"(": ")", "[": "]", "{": "}"}
CLOSERS = set(OPENERS.values())
QUOTES = ('"""', "'''", '"', "'", "`")
_QUOTE_CHARS = frozenset("\"'`")

_FENCE_OPEN = re.compile(r"^```[\w+-]*[ \t]*\n")
_FENCE_CLOSE = re.compile(r"\n?```[ \t]*$")

# Extra passes beyond one per character before giving up on a fixed point
_MAX_PASSES = 6


class Postprocessor:
    """Validates and cleans streamed completions."""

    def __init__(self, config: Optional[InlineCompletionConfig] = None):
        self._config = config or InlineCompletionConfig()

    def process(
        self, session: StreamSession, document: Optional[DocumentState] = None
    ) -> Optional[Suggestion]:
        """Build the suggestion for a finished session.

        Args:
            session: Session whose accumulated text is processed
            document: Latest document state (request text when omitted)

        Returns:
            Suggestion, or None when the completion is stale or empty
        """
        try:
            return self.finalize(session, document)
        except PostprocessRejected as e:
            logger.debug(f"Session {session.session_id[:8]}: {e}")
            return None

    def finalize(
        self, session: StreamSession, document: Optional[DocumentState] = None
    ) -> Suggestion:
        """Like process, but raises PostprocessRejected instead of returning None."""
        request = session.request
        if document is not None and self.is_stale(request, document):
            raise PostprocessRejected("document changed around the cursor")

        text = self.prepare(session.accumulated_text, request)
        if not text.strip():
            raise PostprocessRejected("empty completion")

        offset = request.cursor_offset
        return Suggestion(
            session_id=session.session_id,
            text=text,
            replace_range=OffsetRange(offset, offset),
            document_uri=request.document_uri,
            from_cache=session.from_cache,
        )

    def is_stale(self, request: CompletionRequest, document: DocumentState) -> bool:
        """Whether the document moved away from what the request saw."""
        text = document.text
        offset = request.cursor_offset
        if offset > len(text):
            return True

        window = self._config.staleness_window_chars
        if window > 0:
            expected = request.prefix_text[-window:]
            if text[max(0, offset - len(expected)) : offset] != expected:
                return True

        expected_rest = request.suffix_text.split("\n", 1)[0]
        actual_rest = text[offset:].split("\n", 1)[0]
        return expected_rest.rstrip() != actual_rest.rstrip()

    def prepare(self, text: str, request: CompletionRequest) -> str:
        """Processed completion text for a request, independent of the live document."""
        return self.process_text(text[: self._config.max_suggestion_chars], request.suffix_text)

    def process_text(self, text: str, suffix: str = "") -> str:
        """Clean, de-duplicate and balance a completion until it is stable."""
        for _ in range(len(text) + _MAX_PASSES):
            result = balance(trim_suffix_overlap(clean(text), suffix), suffix)
            if result == text:
                break
            text = result
        return text


def clean(text: str) -> str:
    """Unwrap a fenced block, drop model control tokens, strip trailing whitespace."""
    if _FENCE_OPEN.match(text):
        text = _FENCE_OPEN.sub("", text, count=1)
        text = _FENCE_CLOSE.sub("", text, count=1)
    for token in FIM_TOKENS + END_TOKENS:
        text = text.replace(token, "")
    return text.rstrip()


def trim_suffix_overlap(text: str, suffix: str) -> str:
    """Drop the longest tail of the completion that repeats the start of the suffix.

    A run of quote characters such as a closing triple quote is never split.
    """
    for k in range(min(len(text), len(suffix)), 0, -1):
        if text[-k:] != suffix[:k]:
            continue
        if text[-k] in _QUOTE_CHARS and text[-k - 1 : -k] == text[-k]:
            continue
        return text[:-k]
    return text


def balance(text: str, suffix: str = "") -> str:
    """Close brackets and quotes the completion opened but never closed.

    Closers the suffix already starts with are not repeated.
    """
    needed = unclosed(text)
    if not needed:
        return text
    supplied = leading_closers(suffix)
    overlap = 0
    for t in range(min(len(needed), len(supplied)), 0, -1):
        if needed[-t:] == supplied[:t]:
            overlap = t
            break
    return text + "".join(needed[: len(needed) - overlap])


def unclosed(text: str) -> List[str]:
    """Closers still needed at the end of text, innermost first."""
    stack: List[str] = []
    quote: Optional[str] = None
    i = 0
    while i < len(text):
        if quote is not None:
            if text[i] == "\\":
                i += 2
                continue
            if text.startswith(quote, i):
                stack.pop()
                i += len(quote)
                quote = None
                continue
            i += 1
            continue

        ch = text[i]
        opened = _quote_at(text, i)
        if opened is not None:
            quote = opened
            stack.append(opened)
            i += len(opened)
            continue
        if ch in OPENERS:
            stack.append(OPENERS[ch])
        elif ch in CLOSERS and stack and stack[-1] == ch:
            stack.pop()
        i += 1
    return list(reversed(stack))


def leading_closers(suffix: str) -> List[str]:
    """Closing brackets and quotes the suffix starts with (whitespace skipped)."""
    closers: List[str] = []
    i = 0
    while i < len(suffix):
        ch = suffix[i]
        if ch.isspace():
            i += 1
            continue
        quote = next((q for q in QUOTES if suffix.startswith(q, i)), None)
        if quote is not None:
            closers.append(quote)
            i += len(quote)
        elif ch in CLOSERS:
            closers.append(ch)
            i += 1
        else:
            break
    return closers


def _quote_at(text: str, i: int) -> Optional[str]:
    # A quote right after a word character is an apostrophe or string prefix end
    if i > 0 and (text[i - 1].isalnum() or text[i - 1] == "_") and not _is_string_prefix(text, i):
        return None
    for quote in QUOTES:
        if text.startswith(quote, i):
            return quote
    return None


def _is_string_prefix(text: str, i: int) -> bool:
    """True for f"..", r'..', b".." style prefixes."""
    j = i
    while j > 0 and text[j - 1].isalpha():
        j -= 1
    prefix = text[j:i].lower()
    if not prefix or len(prefix) > 2 or set(prefix) - set("rbfu"):
        return False
    return j == 0 or not (text[j - 1].isalnum() or text[j - 1] == "_")
