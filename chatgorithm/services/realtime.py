"""Bridge from blocking service code to the Socket.IO event loop.

Airtable, WhatsApp and Gemini calls are synchronous and run in worker
threads (``asyncio.to_thread`` / background tasks).  ``Broadcaster.emit``
can be called from those threads as well as from the loop itself.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import socketio

logger = logging.getLogger(__name__)


class Broadcaster:
    """Thread-safe, fire-and-forget wrapper around ``AsyncServer.emit``."""

    def __init__(self, sio: socketio.AsyncServer | None = None) -> None:
        self._sio = sio
        self._loop: asyncio.AbstractEventLoop | None = None
        # strong refs until done, the loop only keeps weak ones
        self._pending: set[asyncio.Task] = set()

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Remember the loop that owns the Socket.IO server."""
        self._loop = loop

    def emit(self, event: str, data: Any = None, *, to: str | None = None, skip_sid: str | None = None) -> None:
        if self._sio is None:
            logger.debug("No Socket.IO server bound; dropping %s", event)
            return

        coro = self._sio.emit(event, data, to=to, skip_sid=skip_sid)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is not None:
            task = running.create_task(coro)
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        elif self._loop is not None and not self._loop.is_closed():
            asyncio.run_coroutine_threadsafe(coro, self._loop)
        else:
            coro.close()
            logger.warning("Event loop unavailable; dropping %s", event)
