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

"""Stream sessions and model stream consumption."""

import logging
import uuid
from enum import Enum
from typing import AsyncIterator, Callable, Optional, Sequence, Tuple

from victor_inline.cancellation import CancellationToken
from victor_inline.fingerprint import Fingerprint
from victor_inline.protocol import CompletionRequest
from victor_inline.providers.base import estimate_tokens

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Lifecycle state of a stream session."""

    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.CANCELLED, SessionState.FAILED)


class StopReason(str, Enum):
    """Why a model stream stopped being consumed."""

    PROVIDER_STOP = "provider_stop"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    CANCELLED = "cancelled"


_TRANSITIONS = {
    SessionState.PENDING: {
        SessionState.STREAMING,
        SessionState.COMPLETED,  # Served from cache
        SessionState.CANCELLED,
        SessionState.FAILED,
    },
    SessionState.STREAMING: {
        SessionState.COMPLETED,
        SessionState.CANCELLED,
        SessionState.FAILED,
    },
}


class StreamSession:
    """One completion attempt of a logical editor session.

    State machine: PENDING -> STREAMING -> {COMPLETED, CANCELLED, FAILED}.
    Terminal states are final; later transitions are ignored.
    """

    def __init__(
        self,
        request: CompletionRequest,
        session_key: str,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.session_key = session_key
        self.request = request
        self.fingerprint: Optional[Fingerprint] = None
        self.cancellation_token = CancellationToken()
        self.accumulated_text = ""
        self.state = SessionState.PENDING
        self.stop_reason: Optional[StopReason] = None
        self.error: Optional[BaseException] = None
        self.from_cache = False

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def start_streaming(self, fingerprint: Fingerprint) -> bool:
        self.fingerprint = fingerprint
        return self._transition(SessionState.STREAMING)

    def apply_delta(self, delta: str) -> bool:
        """Append streamed text. Ignored unless the session is streaming."""
        if self.state != SessionState.STREAMING:
            return False
        self.accumulated_text += delta
        return True

    def complete(self, text: Optional[str] = None, from_cache: bool = False) -> bool:
        if self.is_terminal:
            return False
        if text is not None:
            self.accumulated_text = text
        self.from_cache = from_cache
        return self._transition(SessionState.COMPLETED)

    def cancel(self, reason: str = "") -> bool:
        """Cancel the session and its token (and thereby its linked tasks)."""
        changed = self._transition(SessionState.CANCELLED)
        if changed:
            self.stop_reason = StopReason.CANCELLED
            self.cancellation_token.cancel(reason)
        return changed

    def fail(self, error: BaseException) -> bool:
        """Mark the session failed. Partial text is discarded."""
        changed = self._transition(SessionState.FAILED)
        if changed:
            self.error = error
            self.accumulated_text = ""
        return changed

    def _transition(self, new_state: SessionState) -> bool:
        if self.state.is_terminal:
            return False
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid session transition {self.state.value} -> {new_state.value}")
        logger.debug(f"Session {self.session_id[:8]}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        return True

    def __repr__(self) -> str:
        return (
            f"StreamSession(id={self.session_id[:8]}, key={self.session_key!r}, "
            f"state={self.state.value})"
        )


class StreamAccumulator:
    """Accumulates deltas, enforcing stop sequences and a token ceiling.

    Text that could be the start of a stop sequence is held back until
    it is known not to be one, so emitted text never has to be retracted.
    """

    def __init__(
        self,
        stop_sequences: Sequence[str] = (),
        max_tokens: Optional[int] = None,
        count_tokens: Callable[[str], int] = estimate_tokens,
    ):
        self._stop_sequences = [s for s in stop_sequences if s]
        self._max_tokens = max_tokens
        self._count_tokens = count_tokens
        self.text = ""
        self.stop_reason: Optional[StopReason] = None
        self._emitted = 0

    def feed(self, delta: str) -> str:
        """Add a delta.

        Returns:
            Text that is now safe to forward
        """
        if self.stop_reason is not None or not delta:
            return ""

        search_from = max(0, len(self.text) - self._longest_stop() + 1)
        self.text += delta

        match = self._find_stop(search_from)
        if match != -1:
            self.text = self.text[:match]
            self.stop_reason = StopReason.STOP_SEQUENCE
            return self.flush()

        if self._max_tokens is not None and self._count_tokens(self.text) >= self._max_tokens:
            self.stop_reason = StopReason.MAX_TOKENS
            return self.flush()

        safe = len(self.text) - self._held_back()
        return self._emit(safe)

    def finish(self, reason: StopReason = StopReason.PROVIDER_STOP) -> str:
        """Mark the stream ended and release held-back text."""
        if self.stop_reason is None:
            self.stop_reason = reason
        return self.flush()

    def flush(self) -> str:
        return self._emit(len(self.text))

    def _emit(self, upto: int) -> str:
        if upto <= self._emitted:
            return ""
        out = self.text[self._emitted : upto]
        self._emitted = upto
        return out

    def _longest_stop(self) -> int:
        return max((len(s) for s in self._stop_sequences), default=1)

    def _find_stop(self, start: int) -> int:
        positions = [self.text.find(s, start) for s in self._stop_sequences]
        positions = [p for p in positions if p != -1]
        return min(positions) if positions else -1

    def _held_back(self) -> int:
        """Length of the longest text suffix that is a proper prefix of a stop sequence."""
        held = 0
        for stop in self._stop_sequences:
            for length in range(min(len(stop) - 1, len(self.text)), held, -1):
                if self.text.endswith(stop[:length]):
                    held = length
                    break
        return held


async def consume_stream(
    deltas: AsyncIterator[str],
    token: CancellationToken,
    *,
    stop_sequences: Sequence[str] = (),
    max_tokens: Optional[int] = None,
    count_tokens: Callable[[str], int] = estimate_tokens,
    on_delta: Optional[Callable[[str], None]] = None,
) -> Tuple[str, StopReason]:
    """Consume a model stream until it stops or is cancelled.

    The upstream iterator is always closed on exit, which aborts the
    underlying model call when it is still running.

    Args:
        deltas: Text deltas from the model provider
        token: Cancellation token checked before every delta
        stop_sequences: Sequences ending the completion (excluded from the text)
        max_tokens: Token ceiling
        count_tokens: Token counter of the model
        on_delta: Receives text as it becomes final

    Returns:
        (text, stop reason). Text is empty when cancelled.
    """
    accumulator = StreamAccumulator(stop_sequences, max_tokens, count_tokens)

    def _forward(text: str) -> None:
        if text and on_delta is not None:
            on_delta(text)

    try:
        async for delta in deltas:
            if token.cancelled:
                break
            _forward(accumulator.feed(delta))
            if accumulator.stop_reason is not None:
                break
        else:
            if not token.cancelled:
                _forward(accumulator.finish(StopReason.PROVIDER_STOP))
    finally:
        aclose = getattr(deltas, "aclose", None)
        if aclose is not None:
            await aclose()

    if token.cancelled:
        return "", StopReason.CANCELLED
    return accumulator.text, accumulator.stop_reason or StopReason.PROVIDER_STOP
