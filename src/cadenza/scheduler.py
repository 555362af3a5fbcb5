"""Priority coalescing of high-frequency stream updates.

Callers push an update closure per chunk; the queue keeps only the
highest-priority pending closure per stream and runs at most one at a
time per stream.  Typical priority is the accumulated content length,
so the most complete buffer always wins.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

UpdateFn = Callable[[], Awaitable[None]]


@dataclass
class PendingUpdate:
    priority: int
    update: UpdateFn


@dataclass
class StreamData:
    active: bool = True
    watermark: int = 0
    pending: PendingUpdate | None = None
    in_flight: asyncio.Task | None = None

    @property
    def busy(self) -> bool:
        return self.in_flight is not None and not self.in_flight.done()


class UpdateQueue:
    """Coalesces updates per stream key and executes them in the background.

    ``start()`` launches the processing loop; ``flush()`` runs a single
    pass for callers (and tests) that want deterministic scheduling.

    Args:
        idle_interval: Seconds to wait for new work when a pass found
            nothing to run.
    """

    def __init__(self, idle_interval: float = 0.05):
        self.idle_interval = idle_interval
        self._streams: dict[str, StreamData] = {}
        self._wake = asyncio.Event()
        self._loop_task: asyncio.Task | None = None
        self._stopping = False

    # ------------------------------------------------------------------
    # Stream lifecycle
    # ------------------------------------------------------------------

    def start_stream(self) -> str:
        key = uuid.uuid4().hex
        self._streams[key] = StreamData()
        return key

    def add_update(self, key: str, priority: int, update: UpdateFn) -> None:
        stream = self._streams.get(key)
        if stream is None or not stream.active:
            return
        stream.watermark = max(stream.watermark, priority)
        if stream.pending is None or priority > stream.pending.priority:
            stream.pending = PendingUpdate(priority=priority, update=update)
        self._wake.set()

    def close_stream(self, key: str) -> None:
        stream = self._streams.get(key)
        if stream is None:
            return
        stream.active = False
        stream.pending = None
        self._wake.set()

    async def wait_idle(self, key: str) -> None:
        """Wait until no update for ``key`` is executing."""
        stream = self._streams.get(key)
        if stream is not None and stream.busy:
            await asyncio.wait({stream.in_flight})

    def is_active(self, key: str) -> bool:
        stream = self._streams.get(key)
        return stream is not None and stream.active

    def __contains__(self, key: str) -> bool:
        return key in self._streams

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _tick(self) -> list[asyncio.Task]:
        started = []
        for key in list(self._streams):
            stream = self._streams[key]
            if not stream.active:
                stream.pending = None
                if not stream.busy:
                    del self._streams[key]
                continue
            pending = stream.pending
            if pending is None or stream.busy or pending.priority < stream.watermark:
                continue
            stream.pending = None
            task = asyncio.create_task(self._execute(key, pending))
            task.add_done_callback(lambda _: self._wake.set())
            stream.in_flight = task
            started.append(task)
        return started

    async def _execute(self, key: str, pending: PendingUpdate) -> None:
        try:
            await pending.update()
        except Exception:
            logger.exception(f"Update for stream {key} (priority {pending.priority}) failed")

    async def flush(self) -> int:
        """Run one pass and wait for the updates it started."""
        started = self._tick()
        if started:
            await asyncio.gather(*started)
        return len(started)

    async def _run(self) -> None:
        while not self._stopping:
            self._wake.clear()
            if self._tick():
                await asyncio.sleep(0)
                continue
            try:
                async with asyncio.timeout(self.idle_interval):
                    await self._wake.wait()
            except TimeoutError:
                pass

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._stopping = False
            self._loop_task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the loop and wait for updates already in flight."""
        if self._loop_task is not None:
            self._stopping = True
            self._wake.set()
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        in_flight = [s.in_flight for s in self._streams.values() if s.busy]
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)

    async def __aenter__(self) -> UpdateQueue:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
