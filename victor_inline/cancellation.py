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

"""Cooperative cancellation for completion attempts."""

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cancellation signal shared by the tasks of one attempt.

    Cancelling the token cancels every linked task and runs the
    registered callbacks exactly once. Linking a task to an already
    cancelled token cancels it immediately.
    """

    def __init__(self):
        self._cancelled = False
        self._reason = ""
        self._callbacks: list[Callable[[str], None]] = []
        self._tasks: list[asyncio.Task] = []
        self._event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "") -> bool:
        """Cancel the token.

        Args:
            reason: Short description for logs

        Returns:
            True if this call cancelled the token, False if it already was
        """
        if self._cancelled:
            return False
        self._cancelled = True
        self._reason = reason

        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._tasks.clear()

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(reason)
            except Exception as e:
                logger.warning(f"Cancellation callback failed: {e}")

        if self._event is not None:
            self._event.set()
        return True

    def add_callback(self, callback: Callable[[str], None]) -> None:
        """Run callback(reason) on cancellation (immediately if already cancelled)."""
        if self._cancelled:
            callback(self._reason)
            return
        self._callbacks.append(callback)

    def link_task(self, task: asyncio.Task) -> None:
        """Cancel task when this token is cancelled."""
        if self._cancelled:
            task.cancel()
            return
        self._tasks = [t for t in self._tasks if not t.done()]
        self._tasks.append(task)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise asyncio.CancelledError(self._reason)

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        if self._cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled}, reason={self._reason!r})"
