"""Pydantic models for the chunked transfer protocol."""

import time
import uuid
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class TransferState(str, Enum):
    """States of one side of a multi-file transfer."""
    IDLE = "idle"
    TRANSFERRING = "transferring"
    WAITING_FOR_EOF = "waiting_for_eof"
    WAITING_FOR_DATA = "waiting_for_data"
    COMPLETED = "completed"
    FAILED = "failed"


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


# --- Wire protocol messages (text frames) ---

class MultiFileHeader(BaseModel):
    """First message of a batch."""
    model_config = ConfigDict(populate_by_name=True)

    multi_file_meta: Literal[True] = Field(default=True, alias="multiFileMeta")
    total: int = Field(ge=0)


class FileMetadata(BaseModel):
    """Sent before the chunks of each file."""
    name: str
    size: int = Field(ge=0)


class EndOfFile(BaseModel):
    """Sent after the last chunk of each file."""
    type: Literal["EOF"] = "EOF"


# --- State exposed to callers ---

class TransferProgress(BaseModel):
    """Progress snapshot emitted while sending or receiving."""
    direction: TransferDirection
    file_name: str
    file_index: int
    total_files: int
    transferred_bytes: int
    file_size: int
    speed_bps: float = 0.0

    @property
    def progress_percent(self) -> float:
        if self.file_size <= 0:
            return 100.0
        return min(100.0, self.transferred_bytes / self.file_size * 100)


class ReceivedFile(BaseModel):
    """A finalized file artifact."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    name: str
    declared_size: int
    data: bytes = Field(repr=False)
    complete: bool = True
    timestamp: float = Field(default_factory=time.time)
    saved_path: Path | None = None

    @property
    def size(self) -> int:
        return len(self.data)
