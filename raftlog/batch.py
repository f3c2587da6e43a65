"""Log batches: entries, commands and key-values encoded as one unit.

Encoding format:

- header = { u56 len | u8 compression type | u64 item offset }
- entries = { [entry..] (optionally compressed) | crc32 }
- footer = { item batch }

Calling protocol: add content, then ``finish_populate``, then
``finish_write``; ``drain`` makes the batch reusable.
"""

from __future__ import annotations

import enum
from dataclasses import replace
from typing import Iterable, Sequence

import lz4.block

from raftlog.errors import CorruptionError, FullError
from raftlog.format import FileBlockHandle
from raftlog.items import (
    LOG_BATCH_CHECKSUM_LEN,
    LOG_BATCH_HEADER_LEN,
    Command,
    CompressionType,
    EntryIndex,
    LogItem,
    LogItemBatch,
    crc32,
    verify_checksum,
)

MAX_LOG_ENTRIES_SIZE_PER_BATCH = (1 << 31) - 1
"""Largest total size of entries accepted by one batch (the lz4 content limit)."""

_EMPTY_HEADER = bytes(LOG_BATCH_HEADER_LEN)


class _BufState(enum.Enum):
    OPEN = enum.auto()
    SEALED = enum.auto()


class LogBatch:
    """A batch of log items together with the data of their entries."""

    def __init__(self, *, max_entries_size: int = MAX_LOG_ENTRIES_SIZE_PER_BATCH) -> None:
        self._max_entries_size = max_entries_size
        self._item_batch = LogItemBatch()
        self._state = _BufState.OPEN
        # Header placeholder followed by raw entry data while open.
        self._buf = bytearray(_EMPTY_HEADER)
        self._encoded = b""
        self._entries_len = 0

    def __repr__(self) -> str:
        return f"LogBatch(state={self._state.name}, items={self._item_batch!r})"

    @property
    def item_batch(self) -> LogItemBatch:
        """The log items held by this batch."""
        return self._item_batch

    def _require_open(self) -> None:
        if self._state is not _BufState.OPEN:
            raise RuntimeError("log batch is sealed; drain it before adding content")

    def _require_sealed(self) -> None:
        if self._state is not _BufState.SEALED:
            raise RuntimeError("log batch has not been populated")

    def merge(self, rhs: LogBatch) -> None:
        """Moves all log items of ``rhs`` into this batch, leaving ``rhs`` empty."""
        self._require_open()
        rhs._require_open()
        if len(rhs._buf) + len(self._buf) > self._max_entries_size + LOG_BATCH_HEADER_LEN * 2:
            raise FullError("log batch is full")
        self._buf += rhs._buf[LOG_BATCH_HEADER_LEN:]
        del rhs._buf[LOG_BATCH_HEADER_LEN:]
        self._item_batch.merge(rhs._item_batch)

    def add_entries(self, region_id: int, entries: Iterable[tuple[int, bytes]]) -> None:
        """Adds encoded log entries, given as ``(index, data)`` pairs."""
        self._require_open()
        entries = list(entries)
        if not entries:
            return
        old_len = len(self._buf)
        entry_indexes = []
        for index, data in entries:
            self._buf += data
            if len(self._buf) > self._max_entries_size + LOG_BATCH_HEADER_LEN:
                del self._buf[old_len:]
                raise FullError("log batch is full")
            entry_indexes.append(EntryIndex(index=index, entry_len=len(data)))
        self._item_batch.add_entry_indexes(region_id, entry_indexes)

    def add_raw_entries(
        self,
        region_id: int,
        entry_indexes: Sequence[EntryIndex],
        entries: Sequence[bytes],
    ) -> None:
        """Adds entries with their indexes; one data block per entry index."""
        if len(entry_indexes) != len(entries):
            raise ValueError("entry indexes and entries differ in length")
        self._require_open()
        if not entry_indexes:
            return
        old_len = len(self._buf)
        copied = []
        for ei, data in zip(entry_indexes, entries):
            if len(data) + len(self._buf) > self._max_entries_size + LOG_BATCH_HEADER_LEN:
                del self._buf[old_len:]
                raise FullError("log batch is full")
            self._buf += data
            copied.append(replace(ei, entry_len=len(data)))
        self._item_batch.add_entry_indexes(region_id, copied)

    def add_command(self, region_id: int, command: Command) -> None:
        self._require_open()
        self._item_batch.add_command(region_id, command)

    def delete(self, region_id: int, key: bytes) -> None:
        self._require_open()
        self._item_batch.delete(region_id, bytes(key))

    def put(self, region_id: int, key: bytes, value: bytes) -> None:
        self._require_open()
        self._item_batch.put(region_id, bytes(key), bytes(value))

    def is_empty(self) -> bool:
        """True if the batch holds no log item."""
        return len(self._item_batch) == 0

    def finish_populate(self, compression_threshold: int) -> int:
        """Seals the batch and encodes it; returns the encoded length.

        Entries are lz4-compressed when ``compression_threshold`` is positive
        and their total size reaches it.
        """
        self._require_open()
        if self.is_empty():
            self._encoded = b""
            self._entries_len = 0
            self._state = _BufState.SEALED
            return 0

        raw = bytes(self._buf[LOG_BATCH_HEADER_LEN:])
        if compression_threshold > 0 and len(self._buf) >= LOG_BATCH_HEADER_LEN + compression_threshold:
            body = lz4.block.compress(raw, store_size=True)
            compression_type = CompressionType.LZ4
        else:
            body = raw
            compression_type = CompressionType.NONE

        if body:
            body += crc32(body).to_bytes(LOG_BATCH_CHECKSUM_LEN, "little")
        footer_offset = LOG_BATCH_HEADER_LEN + len(body)

        footer = self._item_batch.encode()
        self._item_batch.finish_populate(compression_type)

        total = footer_offset + len(footer)
        header = ((total << 8) | int(compression_type)).to_bytes(8, "big")
        header += footer_offset.to_bytes(8, "big")

        self._encoded = header + body + footer
        self._entries_len = footer_offset - LOG_BATCH_HEADER_LEN
        self._state = _BufState.SEALED
        return len(self._encoded)

    def encoded_bytes(self) -> bytes:
        """Encoded data of the batch; only valid after ``finish_populate``."""
        self._require_sealed()
        return self._encoded

    def finish_write(self, handle: FileBlockHandle) -> None:
        """Records where the batch was written, locating every entry index."""
        self._require_sealed()
        handle = replace(handle)
        if not self.is_empty():
            handle.offset += LOG_BATCH_HEADER_LEN
            handle.length = self._entries_len
        self._item_batch.finish_write(handle)

    def drain(self) -> list[LogItem]:
        """Removes and returns all log items, reopening the batch for use."""
        del self._buf[LOG_BATCH_HEADER_LEN:]
        self._encoded = b""
        self._entries_len = 0
        self._state = _BufState.OPEN
        return self._item_batch.drain()

    def approximate_size(self) -> int:
        """Estimated encoded size; never smaller than the real one."""
        if self.is_empty():
            return 0
        if self._state is _BufState.OPEN:
            return len(self._buf) + LOG_BATCH_CHECKSUM_LEN + self._item_batch.approximate_size()
        return len(self._encoded)

    @staticmethod
    def decode_header(data: bytes) -> tuple[int, CompressionType, int]:
        """Decodes a batch header into (item offset, compression type, length)."""
        if len(data) < LOG_BATCH_HEADER_LEN:
            raise CorruptionError(f"Log batch header too short: {len(data)}")
        raw_len = int.from_bytes(data[0:8], "big")
        offset = int.from_bytes(data[8:16], "big")
        compression_type = CompressionType.from_u8(raw_len & 0xFF)
        if offset > raw_len:
            raise CorruptionError("Log item offset exceeds log batch length")
        if offset < LOG_BATCH_HEADER_LEN:
            raise CorruptionError("Log item offset is smaller than log batch header length")
        return offset, compression_type, raw_len >> 8

    @staticmethod
    def decode_entries_block(
        data: bytes, handle: FileBlockHandle, compression: CompressionType
    ) -> bytes:
        """Verifies and unfolds the bytes of an encoded entries block."""
        if handle.length <= 0:
            return b""
        block = bytes(data[:handle.length])
        verify_checksum(block)
        body = block[:-LOG_BATCH_CHECKSUM_LEN]
        if compression == CompressionType.NONE:
            return body
        try:
            return lz4.block.decompress(body)
        except (lz4.block.LZ4BlockError, ValueError) as error:
            raise CorruptionError(f"Failed to decompress entries: {error}") from error