"""Debounced batch scheduler.

Chunks are not processed as soon as they are added: every ``enqueue`` (re)arms a timer,
and only when no new chunk arrived for ``delay_ms`` milliseconds are the queued chunks
flushed, in arrival order and in groups of at most ``batch_size``. This amortizes LLM
calls over bursts of small insertions.

State machine::

    IDLE --enqueue--> ARMED --enqueue (timer reset)--> ARMED --timer / force--> FLUSHING --> IDLE

There is one scheduler per session. Flushes of a session are serialized by a lock, so
a flush requested while another one is in flight waits for it; schedulers of different
sessions flush concurrently.

Time is read through a clock object: AsyncioClock uses the running event loop, and
VirtualClock lets tests move time forward explicitly.
"""

import asyncio
import heapq
import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from souvenir._exceptions import ValidationError
from souvenir._types import TChunk, TId
from souvenir._utils import logger

# Callback processing one group of chunks of a session
TProcessor = Callable[[List[TChunk], Optional[Any]], Awaitable[None]]


####################################################################################################
# CLOCKS
####################################################################################################


class TimerHandle:
    """Handle returned by BaseClock.call_later."""

    def cancel(self) -> None:
        raise NotImplementedError


class BaseClock:
    """Source of time and delayed callbacks."""

    def now(self) -> float:
        raise NotImplementedError

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Call ``callback`` once, ``delay`` seconds from now."""
        raise NotImplementedError


class _AsyncioTimerHandle(TimerHandle):
    def __init__(self, handle: asyncio.TimerHandle):
        self._handle = handle

    def cancel(self) -> None:
        self._handle.cancel()


class AsyncioClock(BaseClock):
    """Clock backed by the running event loop."""

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return _AsyncioTimerHandle(asyncio.get_running_loop().call_later(delay, callback))


@dataclass(order=True)
class _VirtualTimer(TimerHandle):
    when: float
    seq: int
    callback: Callable[[], None] = field(compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class VirtualClock(BaseClock):
    """Manually driven clock for deterministic tests.

    Example:
        >>> clock = VirtualClock()
        >>> fired = []
        >>> _ = clock.call_later(0.1, lambda: fired.append(clock.now()))
        >>> clock.advance(0.05); fired
        []
        >>> clock.advance(0.05); fired
        [0.1]
    """

    _now: float = field(default=0.0)
    _timers: List[_VirtualTimer] = field(init=False, default_factory=list)
    _seq: "itertools.count[int]" = field(init=False, default_factory=itertools.count)

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _VirtualTimer(self._now + max(0.0, delay), next(self._seq), callback)
        heapq.heappush(self._timers, timer)
        return timer

    def advance(self, seconds: float) -> None:
        """Move time forward, firing every due timer in order."""
        target = self._now + seconds
        while self._timers and self._timers[0].when <= target:
            timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = timer.when
            timer.callback()
        self._now = target


####################################################################################################
# SCHEDULER
####################################################################################################


class TSchedulerState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    FLUSHING = "flushing"


@dataclass
class DefaultBatchSchedulerConfig:
    """Configuration of the batch scheduler.

    Attributes:
        delay_ms: Debounce window in milliseconds.
        batch_size: Maximum number of chunks submitted to the processor at once.
        auto_processing: Arm the timer on enqueue. When False, chunks wait for an explicit flush.
    """

    delay_ms: int = field(default=1000)
    batch_size: int = field(default=10)
    auto_processing: bool = field(default=True)

    def __post_init__(self):
        if self.delay_ms < 0:
            raise ValidationError(f"auto_process_delay cannot be negative, got {self.delay_ms}.")
        if self.batch_size <= 0:
            raise ValidationError(f"auto_process_batch_size must be positive, got {self.batch_size}.")


@dataclass
class DefaultBatchScheduler:
    """Debounced scheduler of the chunks of one session.

    Attributes:
        session_id: The session whose chunks are scheduled.
        processor: Coroutine function processing a group of chunks. It is expected to
            handle per-chunk failures itself; if it raises, the whole group is kept for
            the next flush.
        clock: Clock used for the debounce timer.
        config: Delay, batch size and auto-processing switch.
    """

    session_id: TId = field()
    processor: TProcessor = field()
    clock: BaseClock = field(default_factory=AsyncioClock)
    config: DefaultBatchSchedulerConfig = field(default_factory=DefaultBatchSchedulerConfig)

    flush_count: int = field(init=False, default=0)

    _queue: Dict[TId, TChunk] = field(init=False, default_factory=dict)
    _retry: Dict[TId, TChunk] = field(init=False, default_factory=dict)
    _timer: Optional[TimerHandle] = field(init=False, default=None)
    _lock: asyncio.Lock = field(init=False, default_factory=asyncio.Lock)
    _tasks: Set["asyncio.Task[None]"] = field(init=False, default_factory=set)
    _flushing: int = field(init=False, default=0)

    @property
    def state(self) -> TSchedulerState:
        if self._flushing > 0:
            return TSchedulerState.FLUSHING
        if self._timer is not None:
            return TSchedulerState.ARMED
        return TSchedulerState.IDLE

    @property
    def pending(self) -> List[TChunk]:
        """Chunks waiting for a flush, in arrival order (including chunks kept from failed groups)."""
        return [*self._retry.values(), *(c for i, c in self._queue.items() if i not in self._retry)]

    def enqueue(self, chunks: List[TChunk]) -> None:
        """Queue chunks and (re)arm the debounce timer. Never raises."""
        try:
            self._requeue_retries()
            for chunk in chunks:
                self._queue.setdefault(chunk.id, chunk)
            if self.config.auto_processing:
                self._arm()
            logger.debug(f"Queued {len(chunks)} chunks on session '{self.session_id}' ({len(self._queue)} pending).")
        except Exception as e:
            logger.error(f"Error while queueing chunks on session '{self.session_id}': {e}")

    def discard(self, chunk_ids: List[TId]) -> None:
        """Drop chunks from the queue and from the retained failures."""
        for chunk_id in chunk_ids:
            self._queue.pop(chunk_id, None)
            self._retry.pop(chunk_id, None)

    async def force_processing(self, params: Optional[Any] = None) -> int:
        """Cancel the timer and flush every queued chunk now.

        Waits behind a flush already in flight.

        Returns:
            The number of chunks submitted to the processor.

        Raises:
            ValidationError: If a group failed because of invalid data or configuration.
        """
        self._cancel_timer()
        self._requeue_retries()
        chunks = self._take_queue()
        return await self._flush(chunks, params, raise_fatal=True)

    async def wait_until_idle(self) -> None:
        """Wait for every flush started by the timer to complete."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
        async with self._lock:
            pass

    async def close(self) -> None:
        self._cancel_timer()
        await self.wait_until_idle()

    def _arm(self) -> None:
        self._cancel_timer()
        self._timer = self.clock.call_later(self.config.delay_ms / 1000, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        chunks = self._take_queue()
        task = asyncio.ensure_future(self._flush(chunks, None, raise_fatal=False))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _take_queue(self) -> List[TChunk]:
        chunks = list(self._queue.values())
        self._queue = {}
        return chunks

    def _requeue_retries(self) -> None:
        if not self._retry:
            return
        self._queue = {**self._retry, **self._queue}
        self._retry = {}

    async def _flush(self, chunks: List[TChunk], params: Optional[Any], raise_fatal: bool) -> int:
        self._flushing += 1
        try:
            async with self._lock:
                if not chunks:
                    return 0
                logger.info(f"Flushing {len(chunks)} chunks on session '{self.session_id}'.")

                fatal: Optional[ValidationError] = None
                size = self.config.batch_size
                for start in range(0, len(chunks), size):
                    group = chunks[start : start + size]
                    try:
                        await self.processor(group, params)
                    except Exception as e:
                        logger.error(
                            f"Processing of {len(group)} chunks failed on session '{self.session_id}': {e}. "
                            "They will be retried on the next flush."
                        )
                        for chunk in group:
                            self._retry.setdefault(chunk.id, chunk)
                        if fatal is None and isinstance(e, ValidationError):
                            fatal = e

                self.flush_count += 1
                if fatal is not None and raise_fatal:
                    raise fatal
                return len(chunks)
        finally:
            self._flushing -= 1
