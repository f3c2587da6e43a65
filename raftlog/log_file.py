"""Reading and writing single log files."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from raftlog.errors import CorruptionError
from raftlog.format import FileBlockHandle, LogFileFormat, Version

logger = logging.getLogger(__name__)

FILE_ALLOCATE_SIZE = 2 * 1024 * 1024
"""Maximum number of bytes to allocate ahead."""

_BINARY = getattr(os, "O_BINARY", 0)


def _require(fd: int | None) -> int:
    if fd is None:
        raise ValueError("log file is closed")
    return fd


class LogFileWriter:
    """Append-only writer for a log file."""

    def __init__(self, fd: int, version: Version) -> None:
        self._fd: int | None = fd
        self.header = LogFileFormat(version)
        file_size = os.fstat(fd).st_size
        self._written = file_size
        self._capacity = file_size
        self._last_sync = file_size
        if file_size < LogFileFormat.length():
            self._write_header()
        else:
            os.lseek(fd, file_size, os.SEEK_SET)

    def __enter__(self) -> LogFileWriter:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _write_header(self) -> None:
        os.lseek(_require(self._fd), 0, os.SEEK_SET)
        self._last_sync = 0
        self._written = 0
        self.write(self.header.encode(), 0)

    def _allocate(self, offset: int, size: int) -> None:
        allocate = getattr(os, "posix_fallocate", None)
        if allocate is None:
            return
        try:
            allocate(_require(self._fd), offset, size)
        except OSError as error:
            logger.warning("log file allocation failed: %s", error)

    def close(self) -> None:
        """Trims preallocated space, syncs and releases the file."""
        if self._fd is None:
            return
        try:
            self.truncate()
            self.sync()
        finally:
            os.close(self._fd)
            self._fd = None

    def truncate(self) -> None:
        """Drops any space allocated beyond the written data."""
        if self._written < self._capacity:
            os.ftruncate(_require(self._fd), self._written)
            self._capacity = self._written

    def write(self, data: bytes, target_size_hint: int) -> None:
        """Appends ``data``, allocating ahead towards ``target_size_hint``."""
        fd = _require(self._fd)
        new_written = self._written + len(data)
        if self._capacity < new_written:
            alloc = max(
                new_written - self._capacity,
                min(FILE_ALLOCATE_SIZE, max(0, target_size_hint - self._capacity)),
            )
            self._allocate(self._capacity, alloc)
            self._capacity += alloc
        view = memoryview(data)
        while view:
            written = os.write(fd, view)
            view = view[written:]
        self._written = new_written

    def sync(self) -> None:
        """Flushes written data to storage if anything is unsynced."""
        if self._last_sync < self._written:
            os.fsync(_require(self._fd))
            self._last_sync = self._written

    def since_last_sync(self) -> int:
        return self._written - self._last_sync

    def offset(self) -> int:
        return self._written


class LogFileReader:
    """Random-access reader for a log file."""

    def __init__(self, fd: int, version: Version | None = None) -> None:
        self._fd: int | None = fd
        # None forces a seek on the first read.
        self._offset: int | None = None
        self._format = LogFileFormat(version if version is not None else Version.V1)
        if version is None:
            self.parse_format()

    def __enter__(self) -> LogFileReader:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def read(self, handle: FileBlockHandle) -> bytes:
        """Reads the block described by ``handle``; may be short at end of file."""
        return self.read_to(handle.offset, handle.length)

    def read_to(self, offset: int, size: int) -> bytes:
        """Reads up to ``size`` bytes at ``offset``, stopping early only at end of file."""
        fd = _require(self._fd)
        if offset != self._offset:
            os.lseek(fd, offset, os.SEEK_SET)
            self._offset = offset
        chunks = []
        remaining = size
        while remaining > 0:
            chunk = os.read(fd, remaining)
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
            self._offset += len(chunk)
        return b"".join(chunks)

    def parse_format(self) -> LogFileFormat:
        """Reads and decodes the header at the start of the file."""
        header_len = LogFileFormat.length()
        if self.file_size() < header_len:
            raise CorruptionError("Invalid header of LogFile!")
        self._format = LogFileFormat.decode(self.read_to(0, header_len))
        return self._format

    def file_size(self) -> int:
        return os.fstat(_require(self._fd)).st_size

    def file_format(self) -> LogFileFormat:
        return self._format

    def close(self) -> None:
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None


def build_file_writer(
    path: str | Path, version: Version = Version.V1, create: bool = False
) -> LogFileWriter:
    """Opens a log file for append; creates it first when ``create`` is true."""
    flags = os.O_RDWR | _BINARY
    if create:
        flags |= os.O_CREAT
    fd = os.open(path, flags, 0o644)
    try:
        return LogFileWriter(fd, version)
    except BaseException:
        os.close(fd)
        raise


def build_file_reader(path: str | Path, version: Version | None = None) -> LogFileReader:
    """Opens a log file for read, parsing its header unless ``version`` is given."""
    fd = os.open(path, os.O_RDONLY | _BINARY)
    try:
        return LogFileReader(fd, version)
    except BaseException:
        os.close(fd)
        raise