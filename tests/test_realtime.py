"""Tests for the thread-safe Socket.IO broadcaster."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

from chatgorithm.services.realtime import Broadcaster


def _sio() -> MagicMock:
    sio = MagicMock()
    sio.emit = AsyncMock()
    return sio


class TestBroadcaster:
    def test_without_server_is_a_no_op(self):
        Broadcaster().emit("message", {"text": "Hola"})

    def test_emit_inside_running_loop(self):
        sio = _sio()
        broadcaster = Broadcaster(sio)

        async def _run():
            broadcaster.emit("message", {"text": "Hola"}, to="sid1")
            await asyncio.sleep(0)

        asyncio.run(_run())
        sio.emit.assert_awaited_once_with("message", {"text": "Hola"}, to="sid1", skip_sid=None)

    def test_loop_task_is_held_until_done(self):
        sio = _sio()
        broadcaster = Broadcaster(sio)
        held = []

        async def _run():
            broadcaster.emit("message", {"text": "Hola"})
            held.append(len(broadcaster._pending))
            await asyncio.sleep(0.01)
            held.append(len(broadcaster._pending))

        asyncio.run(_run())
        assert held == [1, 0]
        sio.emit.assert_awaited_once()

    def test_emit_from_worker_thread(self):
        sio = _sio()
        broadcaster = Broadcaster(sio)

        async def _run():
            broadcaster.bind_loop(asyncio.get_running_loop())
            await asyncio.to_thread(broadcaster.emit, "contact_updated_notification")
            await asyncio.sleep(0.05)

        asyncio.run(_run())
        sio.emit.assert_awaited_once_with("contact_updated_notification", None, to=None, skip_sid=None)

    def test_emit_without_loop_is_dropped(self):
        sio = _sio()
        Broadcaster(sio).emit("message", {"text": "Hola"})
        sio.emit.assert_not_awaited()
