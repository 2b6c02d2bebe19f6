"""
Receiving side of the chunked transfer protocol.

Chunks are appended in arrival order. The end-marker is the authoritative
completion signal; a matching byte count alone only finalizes a file after
EOF_TIMEOUT when the marker never shows up. When EOF arrives with bytes
still missing, the receiver waits and finalizes once the size is reached,
or after EOF_MAX_WAIT if at least COMPLETION_THRESHOLD of the file arrived.
"""

import asyncio
import logging
import os
from pathlib import Path

from pydantic import BaseModel, Field

from config import (
    COMPLETION_THRESHOLD,
    EOF_GRACE_PERIOD,
    EOF_MAX_WAIT,
    EOF_TIMEOUT,
    FINALIZE_TIMEOUT,
    PROGRESS_UPDATE_INTERVAL,
)
from errors import IncompleteTransferError
from events import EventEmitter
from transfer.models import (
    EndOfFile,
    FileMetadata,
    MultiFileHeader,
    ReceivedFile,
    TransferDirection,
    TransferProgress,
    TransferState,
)
from transfer.progress import ProgressThrottle, SpeedTracker
from transfer.protocol import decode_control

logger = logging.getLogger(__name__)


class ReceiveState(BaseModel):
    """Per-file receive state, reset after every file."""
    active: bool = False
    file_name: str = ""
    file_size: int = 0
    received_size: int = 0
    chunks: list[bytes] = Field(default_factory=list, repr=False)
    eof_received: bool = False
    status: TransferState = TransferState.IDLE


def unique_path(directory: Path, name: str) -> Path:
    """directory/name, or 'name (n).ext' if that already exists."""
    safe_name = Path(name).name or "received.bin"
    candidate = directory / safe_name
    stem, suffix = candidate.stem, candidate.suffix
    n = 1
    while candidate.exists():
        candidate = directory / f"{stem} ({n}){suffix}"
        n += 1
    return candidate


class FileReceiver(EventEmitter):
    """
    Reassembles incoming files.

    Events:
        batch_started(total: int)
        file_started(name: str, size: int, index: int, total: int)
        progress(TransferProgress)
        file_received(ReceivedFile)
        file_failed(name: str, reason: str)
        batch_completed(total: int)
    """

    def __init__(
        self,
        save_dir: str | Path | None = None,
        eof_timeout: float = EOF_TIMEOUT,
        eof_grace_period: float = EOF_GRACE_PERIOD,
        eof_max_wait: float = EOF_MAX_WAIT,
        completion_threshold: float = COMPLETION_THRESHOLD,
        finalize_timeout: float = FINALIZE_TIMEOUT,
        progress_interval: float = PROGRESS_UPDATE_INTERVAL,
    ) -> None:
        super().__init__()
        self.save_dir = Path(save_dir) if save_dir else None
        self._eof_timeout = eof_timeout
        self._eof_grace_period = eof_grace_period
        self._eof_max_wait = eof_max_wait
        self._completion_threshold = completion_threshold
        self._finalize_timeout = finalize_timeout
        self._progress_interval = progress_interval

        self.state = ReceiveState()
        self.total_files = 0
        self.current_file_index = 0
        self.received_files: list[ReceivedFile] = []
        self._finalizing = False
        self._timers: set[asyncio.Task] = set()
        self._tracker = SpeedTracker()
        self._throttle = ProgressThrottle(progress_interval)

    # --- Message entry point ---

    async def handle_message(self, data: str | bytes | bytearray | memoryview) -> None:
        """Feed one data-channel message, in arrival order."""
        if isinstance(data, str):
            message = decode_control(data)
            if isinstance(message, EndOfFile):
                await self._on_eof()
            elif isinstance(message, MultiFileHeader):
                await self._on_header(message)
            elif isinstance(message, FileMetadata):
                await self._on_metadata(message)
        else:
            await self._on_chunk(bytes(data))

    async def _on_header(self, header: MultiFileHeader) -> None:
        self.total_files = header.total
        self.current_file_index = 0
        logger.info(f"Multi-file transfer started, total files: {header.total}")
        await self.emit("batch_started", header.total)

    async def _on_metadata(self, meta: FileMetadata) -> None:
        if self.state.active:
            await self.abort(f"'{self.state.file_name}' interrupted by the next file")

        self.current_file_index += 1
        if self.total_files < self.current_file_index:
            # Sender skipped the batch header.
            self.total_files = self.current_file_index
        self.state = ReceiveState(
            active=True,
            file_name=meta.name,
            file_size=meta.size,
            status=TransferState.TRANSFERRING,
        )
        self._tracker.reset()
        self._schedule(self._eof_timeout_watch())

        logger.info(f"Starting to receive file: {meta.name} ({meta.size} bytes)")
        await self.emit(
            "file_started", meta.name, meta.size,
            self.current_file_index, self.total_files,
        )

    async def _on_chunk(self, chunk: bytes) -> None:
        state = self.state
        if not state.active:
            logger.warning(f"Dropping {len(chunk)}-byte chunk received outside a file")
            return

        state.chunks.append(chunk)
        state.received_size += len(chunk)
        self._tracker.record(len(chunk))

        size_reached = state.received_size >= state.file_size
        if self._throttle.ready() or size_reached:
            await self._report_progress()

        if size_reached:
            if state.received_size > state.file_size:
                logger.warning(
                    f"{state.file_name}: received {state.received_size} bytes, "
                    f"more than the declared {state.file_size}"
                )
            if state.eof_received:
                await self.finalize()
            else:
                state.status = TransferState.WAITING_FOR_EOF
                logger.debug(f"{state.file_name}: size reached, waiting for EOF")

    async def _on_eof(self) -> None:
        state = self.state
        if not state.active:
            logger.debug("Ignoring EOF with no file in progress")
            return

        logger.info(f"EOF received for {state.file_name}")
        state.eof_received = True
        if state.received_size >= state.file_size:
            await self.finalize()
            return

        # Bytes are still missing: wait for them instead of finalizing now.
        state.status = TransferState.WAITING_FOR_DATA
        logger.warning(
            f"EOF for {state.file_name} arrived early "
            f"({state.received_size}/{state.file_size} bytes), waiting for the rest"
        )
        self._schedule(self._eof_grace_wait(state))

    # --- Timers ---

    def _schedule(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)
        return task

    def _cancel_timers(self) -> None:
        current = asyncio.current_task()
        for task in list(self._timers):
            if task is not current:
                task.cancel()
        self._timers.clear()

    async def _eof_timeout_watch(self) -> None:
        """Finalize without EOF if the size matched long ago."""
        state = self.state
        await asyncio.sleep(self._eof_timeout)
        if (
            state is self.state
            and state.active
            and not state.eof_received
            and state.received_size == state.file_size
        ):
            logger.warning(f"EOF timeout reached, finalizing {state.file_name} without EOF")
            await self.finalize()

    async def _eof_grace_wait(self, state: ReceiveState) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        await asyncio.sleep(self._eof_grace_period)

        while state is self.state and state.active:
            if state.received_size >= state.file_size:
                await self.finalize()
                return

            elapsed = loop.time() - started
            if elapsed >= self._eof_max_wait:
                ratio = state.received_size / state.file_size if state.file_size else 1.0
                if ratio >= self._completion_threshold:
                    logger.warning(
                        f"Finalizing {state.file_name} at {ratio:.4%} "
                        f"({state.received_size}/{state.file_size} bytes)"
                    )
                    await self.finalize(complete=False)
                else:
                    error = IncompleteTransferError(
                        f"{state.file_name}: only {state.received_size} of "
                        f"{state.file_size} bytes arrived"
                    )
                    await self.abort(str(error))
                return

            await asyncio.sleep(min(self._eof_grace_period, self._eof_max_wait - elapsed))

    # --- Finalization ---

    async def finalize(self, complete: bool = True) -> ReceivedFile | None:
        """
        Assemble the current file. Safe to call repeatedly: only the first
        call for a given file produces an artifact.
        """
        state = self.state
        if not state.active or self._finalizing:
            return None

        self._finalizing = True
        self._cancel_timers()
        # Detach before any await so late messages or timers see a fresh state.
        self.state = ReceiveState()

        try:
            artifact = ReceivedFile(
                name=state.file_name,
                declared_size=state.file_size,
                data=b"".join(state.chunks),
                complete=complete and state.received_size >= state.file_size,
            )
            state.chunks.clear()

            if self.save_dir is not None:
                try:
                    artifact.saved_path = await asyncio.wait_for(
                        asyncio.to_thread(self._save, artifact),
                        timeout=self._finalize_timeout,
                    )
                except asyncio.TimeoutError:
                    logger.error(f"Saving {artifact.name} timed out; kept in memory only")
                except OSError as e:
                    logger.error(f"Could not save {artifact.name}: {e}")
        finally:
            self._finalizing = False

        self.received_files.append(artifact)
        logger.info(f"File received: {artifact.name} ({artifact.size} bytes)")
        await self.emit("file_received", artifact)

        if self.total_files and self.current_file_index >= self.total_files:
            await self.emit("batch_completed", self.total_files)
        return artifact

    def _save(self, artifact: ReceivedFile) -> Path:
        os.makedirs(self.save_dir, exist_ok=True)
        path = unique_path(self.save_dir, artifact.name)
        path.write_bytes(artifact.data)
        return path

    async def abort(self, reason: str) -> None:
        """Drop the file in progress."""
        state = self.state
        self._cancel_timers()
        self.state = ReceiveState()
        if state.active:
            logger.error(f"Transfer of {state.file_name} aborted: {reason}")
            await self.emit("file_failed", state.file_name, reason)

    async def reset(self, reason: str = "Transfer reset") -> None:
        """Abort any file in progress and forget the batch."""
        await self.abort(reason)
        self.total_files = 0
        self.current_file_index = 0

    async def _report_progress(self) -> None:
        state = self.state
        await self.emit(
            "progress",
            TransferProgress(
                direction=TransferDirection.RECEIVING,
                file_name=state.file_name,
                file_index=self.current_file_index,
                total_files=self.total_files,
                transferred_bytes=state.received_size,
                file_size=state.file_size,
                speed_bps=self._tracker.get_speed(),
            ),
        )

    # --- Artifact bookkeeping ---

    def remove_file(self, file_id: str) -> ReceivedFile | None:
        for i, artifact in enumerate(self.received_files):
            if artifact.id == file_id:
                return self.received_files.pop(i)
        return None

    def clear_files(self) -> None:
        self.received_files.clear()
