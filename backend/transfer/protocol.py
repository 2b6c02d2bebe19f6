"""
Wire helpers for the data-channel transfer protocol.

Text frames carry JSON control messages; binary frames carry raw chunks.
Chunks have no sequence numbers, so ordering relies on the channel.
"""

import json
import logging
from typing import Iterator, Union

from pydantic import ValidationError

from transfer.models import EndOfFile, FileMetadata, MultiFileHeader

logger = logging.getLogger(__name__)

ControlMessage = Union[MultiFileHeader, FileMetadata, EndOfFile]


def encode_header(total: int) -> str:
    return MultiFileHeader(total=total).model_dump_json(by_alias=True)


def encode_metadata(name: str, size: int) -> str:
    return FileMetadata(name=name, size=size).model_dump_json()


def encode_eof() -> str:
    return EndOfFile().model_dump_json()


def decode_control(text: str) -> ControlMessage | None:
    """Parse a text frame. Returns None for anything unrecognised."""
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        logger.error(f"Unparseable control message: {text[:80]!r}")
        return None
    if not isinstance(payload, dict):
        return None

    try:
        if payload.get("type") == "EOF":
            return EndOfFile()
        if payload.get("multiFileMeta"):
            return MultiFileHeader.model_validate(payload)
        if "name" in payload and "size" in payload:
            return FileMetadata.model_validate(payload)
    except ValidationError as e:
        logger.error(f"Invalid control message {payload}: {e}")
        return None

    logger.warning(f"Unknown control message: {payload}")
    return None


def iter_chunk_ranges(file_size: int, chunk_size: int) -> Iterator[tuple[int, int]]:
    """Yield (offset, length) with length = min(chunk_size, file_size - offset)."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    offset = 0
    while offset < file_size:
        length = min(chunk_size, file_size - offset)
        yield offset, length
        offset += length
