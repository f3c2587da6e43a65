"""On-disk naming and header format of log files."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path

from raftlog.errors import CorruptionError

LOG_SEQ_WIDTH = 16
LOG_APPEND_SUFFIX = ".raftlog"
LOG_REWRITE_SUFFIX = ".rewrite"
LOG_FILE_MAGIC_HEADER = b"RAFT-LOG-FILE-HEADER-9986AB3E47F320B394C8E84916EB0ED5"

_VERSION_LEN = 8
_DIGITS = frozenset("0123456789")


class LogQueue(enum.IntEnum):
    """The two queues of log files."""

    APPEND = 0
    REWRITE = 1


_SUFFIXES = {
    LogQueue.APPEND: LOG_APPEND_SUFFIX,
    LogQueue.REWRITE: LOG_REWRITE_SUFFIX,
}


@dataclass(frozen=True, order=True)
class FileId:
    """Identifies one log file by queue and sequence number."""

    queue: LogQueue
    seq: int

    @classmethod
    def parse_file_name(cls, file_name: str) -> FileId | None:
        """Parses a log file name; returns None if it is not one."""
        if len(file_name) <= LOG_SEQ_WIDTH:
            return None
        prefix = file_name[:LOG_SEQ_WIDTH]
        if not set(prefix) <= _DIGITS:
            return None
        seq = int(prefix)
        for queue, suffix in _SUFFIXES.items():
            if file_name.endswith(suffix):
                return cls(queue, seq)
        return None

    def build_file_name(self) -> str:
        return f"{self.seq:0{LOG_SEQ_WIDTH}d}{_SUFFIXES[self.queue]}"

    def build_file_path(self, directory: str | Path) -> Path:
        return Path(directory) / self.build_file_name()

    @classmethod
    def dummy(cls, queue: LogQueue) -> FileId:
        return cls(queue, 0)


@dataclass
class FileBlockHandle:
    """Location of a block of bytes inside a log file."""

    id: FileId
    offset: int = 0
    length: int = 0

    @classmethod
    def dummy(cls, queue: LogQueue) -> FileBlockHandle:
        return cls(FileId.dummy(queue), 0, 0)


class Version(enum.IntEnum):
    """Version of the log file format."""

    V1 = 1

    @classmethod
    def is_valid(cls, value: int) -> bool:
        try:
            cls(value)
        except ValueError:
            return False
        return True


@dataclass(frozen=True)
class LogFileFormat:
    """Header written at the start of every log file."""

    version: Version = field(default=Version.V1)

    @staticmethod
    def length() -> int:
        """Length of the header as written on storage."""
        return len(LOG_FILE_MAGIC_HEADER) + _VERSION_LEN

    @classmethod
    def decode(cls, data: bytes) -> LogFileFormat:
        """Decodes a header from the start of ``data``."""
        data = bytes(data)
        if len(data) < cls.length():
            raise CorruptionError("log file header too short")
        if not data.startswith(LOG_FILE_MAGIC_HEADER):
            raise CorruptionError("log file magic header mismatch")
        start = len(LOG_FILE_MAGIC_HEADER)
        raw = int.from_bytes(data[start:start + _VERSION_LEN], "big")
        if not Version.is_valid(raw):
            raise CorruptionError(f"unrecognized log file version: {raw}")
        return cls(Version(raw))

    def encode(self) -> bytes:
        return LOG_FILE_MAGIC_HEADER + int(self.version).to_bytes(_VERSION_LEN, "big")


def lock_file_path(directory: str | Path) -> Path:
    """Path of the lock file under ``directory``."""
    return Path(directory) / "LOCK"