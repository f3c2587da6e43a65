"""Sequential reader over the log item batches stored in one log file."""

from __future__ import annotations

from raftlog.batch import LogBatch
from raftlog.errors import CorruptionError
from raftlog.format import FileBlockHandle, FileId, LogFileFormat
from raftlog.items import LOG_BATCH_HEADER_LEN, LogItemBatch
from raftlog.log_file import LogFileReader


class LogItemBatchFileReader:
    """A reusable reader over the ``LogItemBatch``es of a log file."""

    def __init__(self, read_block_size: int = 0) -> None:
        self._read_block_size = read_block_size
        self._file_id: FileId | None = None
        self._reader: LogFileReader | None = None
        self._size = 0
        self._buffer = bytearray()
        # File offset of the data held in the buffer.
        self._buffer_offset = 0
        # File offset of the end of the last decoded log batch.
        self._valid_offset = 0

    def open(self, file_id: FileId, reader: LogFileReader) -> None:
        """Starts reading the file behind ``reader``, which this object now owns."""
        size = reader.file_size()
        if self._reader is not None and self._reader is not reader:
            self._reader.close()
        self._file_id = file_id
        self._size = size
        self._reader = reader
        self._buffer = bytearray()
        self._buffer_offset = 0
        self._valid_offset = LogFileFormat.length()

    def reset(self) -> None:
        """Closes any ongoing file access."""
        if self._reader is not None:
            self._reader.close()
        self._file_id = None
        self._reader = None
        self._size = 0
        self._buffer = bytearray()
        self._buffer_offset = 0
        self._valid_offset = 0

    def next_batch(self) -> LogItemBatch | None:
        """Returns the next batch of the open file, or None when there is none."""
        if self._valid_offset >= self._size:
            return None
        if self._valid_offset < LOG_BATCH_HEADER_LEN:
            raise CorruptionError("attempt to read file with broken header")
        footer_offset, compression_type, length = LogBatch.decode_header(
            self._peek(self._valid_offset, LOG_BATCH_HEADER_LEN, 0)
        )
        if self._valid_offset + length > self._size:
            raise CorruptionError("log batch header broken")
        assert self._file_id is not None
        handle = FileBlockHandle(
            self._file_id,
            self._valid_offset + LOG_BATCH_HEADER_LEN,
            footer_offset - LOG_BATCH_HEADER_LEN,
        )
        footer = self._peek(
            self._valid_offset + footer_offset,
            length - footer_offset,
            LOG_BATCH_HEADER_LEN,
        )
        item_batch = LogItemBatch.decode(footer, handle, compression_type)
        self._valid_offset += length
        return item_batch

    def _peek(self, offset: int, size: int, prefetch: int) -> bytes:
        """Returns ``size`` bytes at ``offset``, filling the buffer and prefetching."""
        reader = self._reader
        if reader is None:
            raise RuntimeError("no log file is open")
        end = self._buffer_offset + len(self._buffer)
        if offset > end:
            self._buffer_offset = offset
            data = reader.read_to(offset, max(size + prefetch, self._read_block_size))
            if len(data) < size:
                raise CorruptionError(f"Unexpected eof at {offset + len(data)}")
            self._buffer = bytearray(data)
            return bytes(self._buffer[:size])
        should_read = max(0, offset + size + prefetch - end)
        if should_read > 0:
            data = reader.read_to(end, max(should_read, self._read_block_size))
            if len(data) + prefetch < should_read:
                raise CorruptionError(f"Unexpected eof at {end + len(data)}")
            self._buffer += data
        start = offset - self._buffer_offset
        return bytes(self._buffer[start:start + size])

    def valid_offset(self) -> int:
        """Offset of the end of verified data in the open file; zero if none."""
        return self._valid_offset

    def file_format(self) -> LogFileFormat | None:
        """Header format of the open file, or None if no file is open."""
        if self._reader is None:
            return None
        return self._reader.file_format()