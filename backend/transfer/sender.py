"""Sending side of the chunked transfer protocol."""

import asyncio
import logging
import os
from pathlib import Path

from config import CHUNK_DELAY, CHUNK_SIZE, PROGRESS_UPDATE_INTERVAL
from errors import ChannelNotReadyError
from events import EventEmitter
from transfer.channel import SendQueue
from transfer.models import TransferDirection, TransferProgress
from transfer.progress import ProgressThrottle, SpeedTracker
from transfer.protocol import (
    encode_eof,
    encode_header,
    encode_metadata,
    iter_chunk_ranges,
)

logger = logging.getLogger(__name__)


class FileSender(EventEmitter):
    """
    Streams a batch of files through a SendQueue.

    Events:
        progress(TransferProgress)
        file_sent(name: str, size: int)
    """

    def __init__(
        self,
        queue: SendQueue,
        chunk_size: int = CHUNK_SIZE,
        chunk_delay: float = CHUNK_DELAY,
        progress_interval: float = PROGRESS_UPDATE_INTERVAL,
    ) -> None:
        super().__init__()
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._queue = queue
        self._chunk_size = chunk_size
        self._chunk_delay = chunk_delay
        self._progress_interval = progress_interval

    async def send_files(self, paths: list[str | Path]) -> None:
        """Send header, then every file strictly one after another."""
        if not self._queue.is_open:
            raise ChannelNotReadyError("Data channel not ready")

        files = [Path(p) for p in paths]
        logger.info(f"Starting to send {len(files)} file(s)")
        await self._queue.send(encode_header(len(files)))

        for index, path in enumerate(files, start=1):
            await self.send_file(path, index, len(files))

        logger.info("All files sent successfully")

    async def send_file(self, path: Path, index: int = 1, total: int = 1) -> None:
        """Send metadata, chunks and the end-marker for one file."""
        file_size = os.path.getsize(path)
        name = path.name
        tracker = SpeedTracker()
        throttle = ProgressThrottle(self._progress_interval)
        sent = 0

        logger.info(f"Sending ({index}/{total}): {name} ({file_size} bytes)")
        await self._queue.send(encode_metadata(name, file_size))
        await self._report(name, index, total, sent, file_size, tracker)

        with open(path, "rb") as f:
            for _, length in iter_chunk_ranges(file_size, self._chunk_size):
                chunk = await asyncio.to_thread(f.read, length)
                if len(chunk) != length:
                    raise OSError(
                        f"{name} changed while sending "
                        f"(expected {length} bytes, read {len(chunk)})"
                    )
                await self._queue.send(chunk)

                sent += length
                tracker.record(length)
                if throttle.ready():
                    await self._report(name, index, total, sent, file_size, tracker)
                if self._chunk_delay > 0:
                    await asyncio.sleep(self._chunk_delay)

        await self._queue.send(encode_eof())
        # The next file starts only once this one has left the local buffer.
        await self._queue.wait_flushed()

        await self._report(name, index, total, sent, file_size, tracker)
        logger.info(f"File sent completely: {name}")
        await self.emit("file_sent", name, file_size)

    async def _report(
        self,
        name: str,
        index: int,
        total: int,
        sent: int,
        size: int,
        tracker: SpeedTracker,
    ) -> None:
        await self.emit(
            "progress",
            TransferProgress(
                direction=TransferDirection.SENDING,
                file_name=name,
                file_index=index,
                total_files=total,
                transferred_bytes=sent,
                file_size=size,
                speed_bps=tracker.get_speed(),
            ),
        )
