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

"""Fingerprints identifying semantically identical completion attempts.

A fingerprint hashes the document URI, the normalized prefix and suffix
and the content hashes of the selected snippets, in order. Every field
is length-prefixed so that no two distinct inputs share a hash input.
"""

import difflib
import hashlib
from dataclasses import dataclass
from typing import Optional, Sequence

from victor_inline.protocol import CompletionRequest, ContextSnippet


@dataclass(frozen=True)
class Fingerprint:
    """Stable cache and dedup key for a completion attempt."""

    document_uri: str
    digest: str

    @property
    def short(self) -> str:
        return self.digest[:12]

    def __str__(self) -> str:
        return f"{self.document_uri}#{self.short}"


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalize_prefix(prefix: str) -> str:
    """Normalize line endings and trailing whitespace before the cursor.

    The cursor line keeps its trailing whitespace: ``return `` and
    ``return`` complete differently.
    """
    lines = _unify_newlines(prefix).split("\n")
    return "\n".join([line.rstrip() for line in lines[:-1]] + lines[-1:])


def normalize_suffix(suffix: str) -> str:
    """Normalize line endings and trailing whitespace after the cursor."""
    lines = _unify_newlines(suffix).split("\n")
    return "\n".join(line.rstrip() for line in lines)


def compute_fingerprint(
    request: CompletionRequest, snippets: Sequence[ContextSnippet] = ()
) -> Fingerprint:
    """Derive the fingerprint of a request and its ordered context.

    Args:
        request: The completion request
        snippets: Selected context snippets, in prompt order

    Returns:
        Fingerprint bound to the request's document
    """
    hasher = hashlib.sha256()
    for part in (
        request.document_uri,
        normalize_prefix(request.prefix_text),
        normalize_suffix(request.suffix_text),
    ):
        _update(hasher, part)

    hasher.update(str(len(snippets)).encode("ascii") + b":")
    for snippet in snippets:
        _update(hasher, content_hash(snippet.content))

    return Fingerprint(document_uri=request.document_uri, digest=hasher.hexdigest())


def provisional_fingerprint(request: CompletionRequest) -> Fingerprint:
    """Fingerprint computed before any context is assembled."""
    return compute_fingerprint(request, ())


def cursor_span(text: str, offset: int, window: int) -> str:
    """Text within ``window`` characters on each side of an offset."""
    offset = max(0, min(offset, len(text)))
    return text[max(0, offset - window) : offset + window]


def span_similarity(a: str, b: str) -> float:
    """Similarity ratio between two spans (1.0 = identical)."""
    if a == b:
        return 1.0
    return difflib.SequenceMatcher(None, a, b, autojunk=False).ratio()


def spans_diverge(a: str, b: str, threshold: float) -> bool:
    """Whether two spans are less similar than threshold.

    The cheap upper bounds of the matcher reject clear divergence before
    the full ratio is computed.
    """
    if a == b:
        return False
    matcher = difflib.SequenceMatcher(None, a, b, autojunk=False)
    if matcher.real_quick_ratio() < threshold or matcher.quick_ratio() < threshold:
        return True
    return matcher.ratio() < threshold


@dataclass(frozen=True)
class TextChange:
    """Region replaced between two versions of a document.

    ``old_text[start:old_end]`` became ``new_text[start:new_end]``.
    """

    start: int
    old_end: int
    new_end: int

    @property
    def delta(self) -> int:
        return self.new_end - self.old_end


def text_change(old: str, new: str) -> Optional[TextChange]:
    """Smallest single region that turns old into new (None if equal)."""
    if old == new:
        return None
    start = _common_prefix_len(old, new)
    tail = _common_suffix_len(old, new, min(len(old), len(new)) - start)
    return TextChange(start, len(old) - tail, len(new) - tail)


def _common_prefix_len(a: str, b: str) -> int:
    # Binary search over slice comparisons
    low, high = 0, min(len(a), len(b))
    while low < high:
        mid = (low + high + 1) // 2
        if a[:mid] == b[:mid]:
            low = mid
        else:
            high = mid - 1
    return low


def _common_suffix_len(a: str, b: str, limit: int) -> int:
    low, high = 0, max(0, limit)
    while low < high:
        mid = (low + high + 1) // 2
        if a[len(a) - mid :] == b[len(b) - mid :]:
            low = mid
        else:
            high = mid - 1
    return low


def _update(hasher, part: str) -> None:
    data = part.encode("utf-8")
    hasher.update(str(len(data)).encode("ascii") + b":" + data)


def _unify_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")
