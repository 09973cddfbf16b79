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

"""Gate deciding whether an edit should start a completion attempt.

Two independent stages:
- Prefilter: composable rules that all must pass
- Debounce: a per-session quiet period that every new qualifying edit resets

Manual triggers skip the debounce and the line-length rule, but not
the syntax rule.
"""

import asyncio
import itertools
import logging
from typing import Optional, Protocol, runtime_checkable

from victor_inline.config import InlineCompletionConfig
from victor_inline.protocol import EditEvent, EditorState, SyntaxRegion
from victor_inline.syntax import SyntaxClassifier, detect_language

logger = logging.getLogger(__name__)


@runtime_checkable
class PrefilterRule(Protocol):
    """A single prefilter check."""

    @property
    def name(self) -> str: ...

    def allows(self, event: EditEvent, state: EditorState) -> bool:
        """Return True if the edit may start an attempt."""
        ...


class SyntaxRegionRule:
    """Suppress completions inside string literals and comments."""

    SUPPRESSED = frozenset({SyntaxRegion.STRING, SyntaxRegion.COMMENT})

    def __init__(self, classifier: Optional[SyntaxClassifier] = None):
        self._classifier = classifier

    @property
    def name(self) -> str:
        return "syntax_region"

    def allows(self, event: EditEvent, state: EditorState) -> bool:
        return self.region_for(event, state) not in self.SUPPRESSED

    def region_for(self, event: EditEvent, state: EditorState) -> SyntaxRegion:
        if state.syntax_region is not None:
            return state.syntax_region
        if self._classifier is None:
            return SyntaxRegion.UNKNOWN
        language = state.language or detect_language(event.document_uri, event.prefix_text[:256])
        return self._classifier.classify(event.document_text, event.cursor_offset, language)


class PureDeletionRule:
    """Suppress pure deletions that leave nothing after the cursor on its line."""

    @property
    def name(self) -> str:
        return "pure_deletion"

    def allows(self, event: EditEvent, state: EditorState) -> bool:
        if not event.is_pure_deletion:
            return True
        return bool(event.line_suffix.strip())


class MinimumLineLengthRule:
    """Suppress automatic triggers on empty or very short lines."""

    def __init__(self, min_chars: int, trigger_characters: Optional[list[str]] = None):
        self._min_chars = min_chars
        self._trigger_characters = set(trigger_characters or [])

    @property
    def name(self) -> str:
        return "min_line_length"

    def allows(self, event: EditEvent, state: EditorState) -> bool:
        if event.is_manual:
            return True
        line = event.line_prefix
        stripped = line.strip()
        if not stripped:
            return False
        if len(stripped) >= self._min_chars:
            return True
        return line[-1:] in self._trigger_characters


class Debouncer:
    """Per-session debounce timers.

    Every qualifying edit bumps the session's generation. A waiter
    proceeds only if its generation is still the latest once the
    window has elapsed. Generations are never reused, so a session's
    key is dropped as soon as its latest waiter settles.
    """

    def __init__(self, delay_ms: float):
        self._delay = max(0.0, delay_ms) / 1000.0
        self._generations: dict[str, int] = {}
        self._counter = itertools.count(1)

    @property
    def delay_ms(self) -> float:
        return self._delay * 1000.0

    def __len__(self) -> int:
        return len(self._generations)

    def touch(self, key: str) -> int:
        """Reset the timer for a session and return the new generation."""
        generation = next(self._counter)
        self._generations[key] = generation
        return generation

    def is_latest(self, key: str, generation: int) -> bool:
        return self._generations.get(key) == generation

    def settle(self, key: str, generation: int) -> bool:
        """Whether a waiter may proceed; the winning waiter releases its key."""
        if not self.is_latest(key, generation):
            return False
        del self._generations[key]
        return True

    async def wait(self, key: str, generation: int) -> bool:
        """Wait out the debounce window.

        Returns:
            True if no newer edit arrived for the session meanwhile
        """
        if self._delay > 0:
            await asyncio.sleep(self._delay)
        return self.settle(key, generation)

    def forget(self, key: str) -> None:
        self._generations.pop(key, None)


class Gate:
    """Decides whether an edit should start a completion attempt."""

    def __init__(
        self,
        config: Optional[InlineCompletionConfig] = None,
        classifier: Optional[SyntaxClassifier] = None,
        rules: Optional[list[PrefilterRule]] = None,
    ):
        """Initialize the gate.

        Args:
            config: Pipeline configuration (defaults if not provided)
            classifier: Syntax classifier used when the editor gives no hint
            rules: Prefilter rules (built-in rules if not provided)
        """
        self._config = config or InlineCompletionConfig()
        self._debouncer = Debouncer(self._config.debounce_ms)
        if rules is None:
            rules = [
                SyntaxRegionRule(classifier),
                PureDeletionRule(),
                MinimumLineLengthRule(
                    self._config.min_line_chars, self._config.trigger_characters
                ),
            ]
        self._rules: list[PrefilterRule] = list(rules)

    @property
    def rules(self) -> list[PrefilterRule]:
        return list(self._rules)

    @property
    def debouncer(self) -> Debouncer:
        return self._debouncer

    def add_rule(self, rule: PrefilterRule) -> None:
        """Add a prefilter rule. All rules must pass."""
        self._rules.append(rule)

    def prefilter(self, event: EditEvent, state: Optional[EditorState] = None) -> Optional[str]:
        """Run the prefilter rules.

        Returns:
            Name of the first rule rejecting the edit, or None if all pass
        """
        state = state or EditorState()
        for rule in self._rules:
            try:
                allowed = rule.allows(event, state)
            except Exception as e:
                logger.warning(f"Prefilter rule {rule.name} failed: {e}")
                allowed = False
            if not allowed:
                return rule.name
        return None

    def register_edit(self, event: EditEvent) -> int:
        """Record a qualifying edit, resetting its session's debounce timer."""
        return self._debouncer.touch(event.session_key)

    async def wait_debounce(self, event: EditEvent, generation: int) -> bool:
        """Wait out the debounce window for a registered edit.

        Manual triggers proceed immediately.
        """
        if event.is_manual:
            return self._debouncer.settle(event.session_key, generation)
        return await self._debouncer.wait(event.session_key, generation)

    async def should_trigger(self, event: EditEvent, state: Optional[EditorState] = None) -> bool:
        """Decide whether the edit should start a completion attempt.

        Args:
            event: The edit
            state: Editor hints for the edit

        Returns:
            True if the edit passed the prefilter and was not superseded
            within the debounce window
        """
        rejected_by = self.prefilter(event, state)
        if rejected_by is not None:
            logger.debug(f"Gate rejected edit in {event.document_uri}: {rejected_by}")
            return False
        generation = self.register_edit(event)
        return await self.wait_debounce(event, generation)
