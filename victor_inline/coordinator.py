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

"""Stream coordination: one active session per editor session, one model
call per fingerprint.

When two sessions need the same fingerprint, the second attaches to the
in-flight stream of the first instead of issuing a new model call. The
model call is aborted only once every attached session has gone away.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from victor_inline.cache import CompletionCache, InFlightMarker
from victor_inline.config import InlineCompletionConfig
from victor_inline.errors import StreamFailure
from victor_inline.fingerprint import Fingerprint
from victor_inline.protocol import CompletionRequest
from victor_inline.providers.base import ModelOptions, ModelProvider
from victor_inline.stream import StopReason, StreamSession, consume_stream
from victor_inline.telemetry import Telemetry, TelemetryKind

logger = logging.getLogger(__name__)


def _retrieve_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class StreamCoordinator:
    """Issues, shares and cancels model streams."""

    def __init__(
        self,
        provider: ModelProvider,
        cache: CompletionCache,
        config: Optional[InlineCompletionConfig] = None,
        telemetry: Optional[Telemetry] = None,
    ):
        """Initialize the coordinator.

        Args:
            provider: Model provider producing completions
            cache: Shared cache holding the in-flight markers
            config: Pipeline configuration
            telemetry: Telemetry hub
        """
        self._provider = provider
        self._cache = cache
        self._config = config or InlineCompletionConfig()
        self._telemetry = telemetry or Telemetry()
        self._sessions: Dict[str, StreamSession] = {}

    @property
    def provider(self) -> ModelProvider:
        return self._provider

    def model_options(self) -> ModelOptions:
        return ModelOptions(
            max_tokens=self._config.max_output_tokens,
            temperature=self._config.temperature,
            stop_sequences=list(self._config.stop_sequences),
            model=self._config.model,
        )

    def begin_session(self, session_key: str, request: CompletionRequest) -> StreamSession:
        """Start a new attempt for a logical session, superseding the prior one.

        Args:
            session_key: Logical editor session
            request: Request of the new attempt

        Returns:
            The new PENDING session
        """
        prior = self._sessions.get(session_key)
        if prior is not None and not prior.is_terminal:
            self.cancel_session(prior, "superseded")
        session = StreamSession(request, session_key)
        self._sessions[session_key] = session
        return session

    def active_session(self, session_key: str) -> Optional[StreamSession]:
        session = self._sessions.get(session_key)
        if session is None or session.is_terminal:
            return None
        return session

    def is_current(self, session: StreamSession) -> bool:
        """Whether the session is still the latest, uncancelled attempt of its key."""
        return (
            self._sessions.get(session.session_key) is session
            and not session.cancellation_token.cancelled
        )

    def __len__(self) -> int:
        return len(self._sessions)

    def cancel(self, session_key: str, reason: str = "cancelled") -> bool:
        session = self._sessions.get(session_key)
        if session is None:
            return False
        return self.cancel_session(session, reason)

    def cancel_document(self, document_uri: str, reason: str = "document closed") -> List[str]:
        """Cancel every session whose request targets a document.

        Returns:
            Keys of the sessions that were dropped
        """
        keys = [
            key
            for key, session in self._sessions.items()
            if session.request.document_uri == document_uri
        ]
        for key in keys:
            session = self._sessions.pop(key)
            self.cancel_session(session, reason)
        return keys

    def cancel_all(self, reason: str = "shutdown") -> int:
        cancelled = 0
        for session in list(self._sessions.values()):
            if self.cancel_session(session, reason):
                cancelled += 1
        self._sessions.clear()
        return cancelled

    def finish(self, session: StreamSession) -> None:
        """Drop a session whose attempt has ended, cancelling it if still open."""
        if not session.is_terminal:
            self.cancel_session(session, "attempt ended")
        self._forget(session)

    def _forget(self, session: StreamSession) -> None:
        if self._sessions.get(session.session_key) is session:
            del self._sessions[session.session_key]

    async def stream(self, session: StreamSession, prompt: str, fingerprint: Fingerprint) -> str:
        """Stream the completion for a session.

        Args:
            session: PENDING session of the attempt
            prompt: Assembled prompt
            fingerprint: Final fingerprint of the attempt

        Returns:
            Completed text

        Raises:
            asyncio.CancelledError: If the session is cancelled while waiting
            StreamFailure: If the model stream failed
        """
        session.cancellation_token.raise_if_cancelled()
        session.start_streaming(fingerprint)

        marker, owned = self._cache.claim_in_flight(fingerprint)
        if owned:
            marker.task = asyncio.create_task(self._produce(marker, prompt))
            self._telemetry.emit(
                TelemetryKind.MODEL_CALL,
                session.session_id,
                fingerprint.document_uri,
                fingerprint=fingerprint.short,
            )
        else:
            logger.debug(f"Session {session.session_id[:8]} attached to in-flight {fingerprint}")
            self._telemetry.emit(
                TelemetryKind.ATTACHED,
                session.session_id,
                fingerprint.document_uri,
                fingerprint=fingerprint.short,
            )

        marker.subscribe(session.session_id, session.apply_delta)
        try:
            text = await asyncio.shield(marker.future)
        except asyncio.CancelledError:
            self._detach(marker, session)
            self.cancel_session(session, "cancelled")
            raise
        except StreamFailure as e:
            marker.unsubscribe(session.session_id)
            if session.fail(e):
                self._telemetry.emit(
                    TelemetryKind.FAILED, session.session_id, fingerprint.document_uri, error=str(e)
                )
            raise

        marker.unsubscribe(session.session_id)
        session.complete(text)
        return text

    async def _produce(self, marker: InFlightMarker, prompt: str) -> None:
        """Run the single model call for a fingerprint and publish its result."""
        future = marker.future
        try:
            deltas = self._provider.stream_completion(prompt, self.model_options(), marker.token)
            text, reason = await consume_stream(
                deltas,
                marker.token,
                stop_sequences=self._config.stop_sequences,
                max_tokens=self._config.max_output_tokens,
                count_tokens=self._provider.count_tokens,
                on_delta=marker.publish,
            )
            if future.done():
                return
            if reason == StopReason.CANCELLED:
                future.cancel()
            else:
                logger.debug(f"Stream for {marker.fingerprint} stopped: {reason.value}")
                future.set_result(text)
        except asyncio.CancelledError:
            if not future.done():
                future.cancel()
            raise
        except Exception as e:
            logger.warning(f"Model provider {self._provider.name} failed: {e}")
            if not future.done():
                future.set_exception(StreamFailure(f"{self._provider.name}: {e}"))
                future.add_done_callback(_retrieve_exception)
        finally:
            self._cache.release_in_flight(marker.fingerprint, marker)

    def _detach(self, marker: InFlightMarker, session: StreamSession) -> None:
        remaining = marker.unsubscribe(session.session_id)
        if remaining == 0 and not marker.done:
            logger.debug(f"No subscribers left for {marker.fingerprint}, aborting model call")
            marker.token.cancel("no subscribers")
            if marker.task is not None:
                marker.task.cancel()

    def cancel_session(self, session: StreamSession, reason: str) -> bool:
        if not session.cancel(reason):
            return False
        self._forget(session)
        self._telemetry.emit(
            TelemetryKind.CANCELLED,
            session.session_id,
            session.request.document_uri,
            reason=reason,
        )
        return True
