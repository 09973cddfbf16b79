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

"""Exceptions raised inside the completion pipeline.

None of these cross the pipeline boundary: the manager absorbs and logs
them, and the caller only ever sees a suggestion or nothing.
"""


class InlineCompletionError(Exception):
    """Base class for pipeline errors."""


class ContextSourceError(InlineCompletionError):
    """A context source failed while being queried."""

    def __init__(self, source: str, message: str = ""):
        self.source = source
        super().__init__(f"Context source {source} failed: {message}" if message else source)


class ContextSourceTimeout(ContextSourceError):
    """A context source did not answer within its timeout."""

    def __init__(self, source: str, timeout_ms: float):
        self.timeout_ms = timeout_ms
        super().__init__(source, f"timed out after {timeout_ms:.0f}ms")


class StreamFailure(InlineCompletionError):
    """The model provider or transport failed mid-stream."""


class PostprocessRejected(InlineCompletionError):
    """A streamed completion was discarded by the postprocessor."""
