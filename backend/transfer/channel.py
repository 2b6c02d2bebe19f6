"""
Ordered send queue with buffer-based flow control.

Every outbound message goes through one FIFO drained by a single task, so
application messages reach the channel in enqueue order no matter how many
producers are awaiting sends at once.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Protocol

from config import (
    BUFFER_CHECK_INTERVAL,
    BUFFER_WAIT_TIMEOUT,
    CHUNK_DELAY,
    HIGH_WATER_RATIO,
    LOW_WATER_RATIO,
    MAX_BUFFERED_AMOUNT,
    QUEUE_FULL_RETRY_DELAY,
)
from errors import ChannelClosedError, ChannelNotReadyError

logger = logging.getLogger(__name__)


class DataChannel(Protocol):
    """The subset of RTCDataChannel the queue relies on."""

    readyState: str
    bufferedAmount: int
    bufferedAmountLowThreshold: int

    def send(self, data: str | bytes) -> None: ...

    def on(self, event: str, f: Any = None) -> Any: ...


def payload_size(data: str | bytes) -> int:
    return len(data.encode("utf-8")) if isinstance(data, str) else len(data)


def is_queue_full(error: Exception) -> bool:
    return "queue is full" in str(error).lower()


class SendQueue:
    """Single-consumer send queue bound to one data channel."""

    def __init__(
        self,
        max_buffered_amount: int = MAX_BUFFERED_AMOUNT,
        high_water_ratio: float = HIGH_WATER_RATIO,
        low_water_ratio: float = LOW_WATER_RATIO,
        check_interval: float = BUFFER_CHECK_INTERVAL,
        wait_timeout: float = BUFFER_WAIT_TIMEOUT,
        item_delay: float = CHUNK_DELAY,
        retry_delay: float = QUEUE_FULL_RETRY_DELAY,
    ) -> None:
        self.high_water_mark = int(max_buffered_amount * high_water_ratio)
        self.low_water_mark = int(max_buffered_amount * low_water_ratio)
        self._check_interval = check_interval
        self._wait_timeout = wait_timeout
        self._item_delay = item_delay
        self._retry_delay = retry_delay

        self._channel: DataChannel | None = None
        self._queue: deque[tuple[str | bytes, asyncio.Future]] = deque()
        self._draining = False
        self._drain_task: asyncio.Task | None = None
        self._buffer_low = asyncio.Event()
        self.stats = {
            "messages_sent": 0,
            "bytes_sent": 0,
            "drains_started": 0,
            "pauses": 0,
            "resumes": 0,
            "buffer_timeouts": 0,
            "retries": 0,
        }

    # --- Channel binding ---

    def attach(self, channel: DataChannel) -> None:
        """Bind to a channel and listen for its low-buffer notification."""
        self._channel = channel
        channel.bufferedAmountLowThreshold = self.low_water_mark
        channel.on("bufferedamountlow", self._buffer_low.set)

    @property
    def channel(self) -> DataChannel | None:
        return self._channel

    @property
    def is_open(self) -> bool:
        return self._channel is not None and self._channel.readyState == "open"

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def draining(self) -> bool:
        return self._draining

    # --- Sending ---

    async def send(self, data: str | bytes) -> None:
        """Queue data and wait until it has been handed to the channel."""
        if self._channel is None:
            raise ChannelNotReadyError("Data channel not initialized")
        if self._channel.readyState != "open":
            raise ChannelNotReadyError(
                f"Data channel not ready (state: {self._channel.readyState})"
            )

        future = asyncio.get_running_loop().create_future()
        self._queue.append((data, future))
        if not self._draining:
            self._draining = True
            self.stats["drains_started"] += 1
            self._drain_task = asyncio.create_task(self._drain())
        await future

    async def _drain(self) -> None:
        try:
            while self._queue:
                data, future = self._queue[0]
                if future.done():
                    self._queue.popleft()
                    continue

                try:
                    await self._wait_for_buffer()
                    self._channel.send(data)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if self.is_open and is_queue_full(e):
                        # Transient: leave the item at the head and try again.
                        self.stats["retries"] += 1
                        await asyncio.sleep(self._retry_delay)
                        continue
                    self._queue.popleft()
                    if not self.is_open:
                        logger.error(f"Channel closed while sending: {e}")
                        if not future.done():
                            future.set_exception(ChannelClosedError(str(e)))
                        self._reject_all(ChannelClosedError("Data channel closed"))
                        return
                    logger.error(f"Error sending data: {e}")
                    if not future.done():
                        future.set_exception(e)
                    continue

                self._queue.popleft()
                self.stats["messages_sent"] += 1
                self.stats["bytes_sent"] += payload_size(data)
                if not future.done():
                    future.set_result(None)

                if self._item_delay > 0:
                    await asyncio.sleep(self._item_delay)
        finally:
            self._draining = False
            self._drain_task = None

    async def _wait_for_buffer(self) -> None:
        """Pause while the channel's outstanding buffer is above the high-water mark."""
        channel = self._channel
        if channel.bufferedAmount <= self.high_water_mark:
            return

        self.stats["pauses"] += 1
        logger.debug(
            f"Buffer full ({channel.bufferedAmount} > {self.high_water_mark}), waiting"
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._wait_timeout

        while channel.bufferedAmount > self.low_water_mark:
            if channel.readyState != "open":
                raise ChannelClosedError("Data channel closed while waiting for buffer")
            remaining = deadline - loop.time()
            if remaining <= 0:
                self.stats["buffer_timeouts"] += 1
                logger.warning(
                    f"Buffer still at {channel.bufferedAmount} bytes after "
                    f"{self._wait_timeout}s, continuing anyway"
                )
                return
            self._buffer_low.clear()
            try:
                await asyncio.wait_for(
                    self._buffer_low.wait(),
                    timeout=min(self._check_interval, remaining),
                )
            except asyncio.TimeoutError:
                pass

        self.stats["resumes"] += 1

    async def wait_flushed(self, timeout: float | None = None) -> bool:
        """
        Wait until the queue is empty and the channel has sent everything
        it buffered. Returns False on timeout.
        """
        timeout = self._wait_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self._queue or (self.is_open and self._channel.bufferedAmount > 0):
            if loop.time() >= deadline:
                logger.warning("Timed out waiting for the send buffer to flush")
                return False
            await asyncio.sleep(self._check_interval)
        return True

    # --- Teardown ---

    def _reject_all(self, error: Exception) -> None:
        while self._queue:
            _, future = self._queue.popleft()
            if not future.done():
                future.set_exception(error)

    def close(self) -> None:
        """Reject everything still queued and stop the drain task."""
        if self._drain_task is not None and self._drain_task is not asyncio.current_task():
            self._drain_task.cancel()
        self._reject_all(ChannelClosedError("Data channel closed"))
        self._draining = False
        self._drain_task = None
        self._channel = None
