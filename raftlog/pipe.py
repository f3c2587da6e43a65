"""File-based log storage arranged as two queues of sequentially numbered files."""

from __future__ import annotations

import enum
import logging
import os
import threading
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Sequence

import portalocker

from raftlog.errors import CorruptionError, RaftLogError
from raftlog.format import FileBlockHandle, FileId, LogQueue, Version, lock_file_path
from raftlog.log_file import LogFileWriter, build_file_reader, build_file_writer

logger = logging.getLogger(__name__)


class RecoveryMode(enum.Enum):
    """How to treat corrupted data found while recovering log files."""

    ABSOLUTE_CONSISTENCY = "absolute-consistency"
    TOLERATE_TAIL_CORRUPTION = "tolerate-tail-corruption"
    TOLERATE_ANY_CORRUPTION = "tolerate-any-corruption"


@dataclass
class PipeConfig:
    """Settings shared by the log file queues of one directory."""

    directory: str | Path
    target_file_size: int = 128 * 1024 * 1024
    bytes_per_sync: int = 4 * 1024 * 1024
    format_version: Version = Version.V1
    recovery_mode: RecoveryMode = RecoveryMode.TOLERATE_TAIL_CORRUPTION
    recovery_threads: int = 4
    recovery_read_block_size: int = 16 * 1024


def _create_file(path: Path, version: Version) -> LogFileWriter:
    """Creates (or empties) a log file and opens it for append."""
    with open(path, "wb"):
        pass
    return build_file_writer(path, version)


class SinglePipe:
    """A file-based log storage that arranges files as one single queue."""

    def __init__(
        self,
        config: PipeConfig,
        queue: LogQueue,
        first_seq: int,
        versions: Sequence[Version],
        writer: LogFileWriter,
    ) -> None:
        self._queue = queue
        self._directory = Path(config.directory)
        self._format_version = Version(config.format_version)
        self._target_file_size = config.target_file_size
        self._bytes_per_sync = config.bytes_per_sync

        self._files_lock = threading.RLock()
        self._first_seq = first_seq
        self._active_seq = first_seq + len(versions) - 1
        self._versions: deque[Version] = deque(versions)

        self._active_lock = threading.Lock()
        self._writer: LogFileWriter | None = writer
        self._writer_seq = self._active_seq

    @classmethod
    def open(
        cls,
        config: PipeConfig,
        queue: LogQueue,
        first_seq: int = 0,
        files: Sequence[Version] = (),
    ) -> SinglePipe:
        """Opens a queue whose files start at ``first_seq``, one version per file.

        A ``first_seq`` of zero means the queue is empty: a first file is created.
        """
        versions = list(files)
        directory = Path(config.directory)
        if first_seq == 0:
            first_seq = 1
            version = Version(config.format_version)
            writer = _create_file(FileId(queue, first_seq).build_file_path(directory), version)
            versions = [version]
        else:
            if not versions:
                raise ValueError("a non-empty queue needs at least one file")
            active_seq = first_seq + len(versions) - 1
            writer = build_file_writer(
                FileId(queue, active_seq).build_file_path(directory), versions[-1]
            )
        return cls(config, queue, first_seq, versions, writer)

    def __enter__(self) -> SinglePipe:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def queue(self) -> LogQueue:
        return self._queue

    def _path(self, seq: int) -> Path:
        return FileId(self._queue, seq).build_file_path(self._directory)

    def _sync_dir(self) -> None:
        """Persists directory metadata such as newly created files."""
        if os.name == "nt":
            return
        fd = os.open(self._directory, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    def _file_version(self, file_seq: int) -> Version:
        with self._files_lock:
            if file_seq < self._first_seq or file_seq > self._active_seq:
                raise CorruptionError("file seqno out of range")
            return self._versions[file_seq - self._first_seq]

    def _active_writer(self) -> LogFileWriter:
        if self._writer is None:
            raise RaftLogError("log pipe is closed")
        return self._writer

    def _rotate_locked(self) -> None:
        """Closes the active file and starts the next one; caller holds the active lock."""
        seq = self._writer_seq + 1
        self._active_writer().close()
        new_writer = _create_file(self._path(seq), self._format_version)
        try:
            # The header must be persisted so recovery copes with a power loss here.
            new_writer.sync()
            self._sync_dir()
        except BaseException:
            new_writer.close()
            raise
        self._writer = new_writer
        self._writer_seq = seq
        with self._files_lock:
            self._active_seq = seq
            self._versions.append(new_writer.header.version)

    def read_bytes(self, handle: FileBlockHandle) -> bytes:
        """Reads the block described by ``handle`` from its file."""
        version = self._file_version(handle.id.seq)
        with build_file_reader(self._path(handle.id.seq), version) as reader:
            return reader.read(handle)

    def append(self, data: bytes) -> FileBlockHandle:
        """Appends ``data`` to the active file and returns where it landed."""
        with self._active_lock:
            writer = self._active_writer()
            seq = self._writer_seq
            start = writer.offset()
            try:
                writer.write(data, self._target_file_size)
            except BaseException as error:
                try:
                    writer.truncate()
                except OSError as truncate_error:
                    raise RuntimeError(
                        f"error when truncate {seq} after error: {error}, get: {truncate_error}"
                    ) from truncate_error
                raise
            return FileBlockHandle(FileId(self._queue, seq), start, writer.offset() - start)

    def maybe_sync(self, force: bool = False) -> None:
        """Rotates a full active file, or syncs it when enough is unsynced or forced."""
        with self._active_lock:
            writer = self._active_writer()
            if writer.offset() >= self._target_file_size:
                self._rotate_locked()
            elif writer.since_last_sync() >= self._bytes_per_sync or force:
                writer.sync()

    def file_span(self) -> tuple[int, int]:
        """The first and the active file sequence numbers."""
        with self._files_lock:
            return self._first_seq, self._active_seq

    def total_size(self) -> int:
        """Estimated size of the queue: file count times the target file size."""
        with self._files_lock:
            return (self._active_seq - self._first_seq + 1) * self._target_file_size

    def rotate(self) -> None:
        """Starts a new active file."""
        with self._active_lock:
            self._rotate_locked()

    def purge_to(self, file_seq: int) -> int:
        """Deletes every file older than ``file_seq``; returns how many were purged."""
        with self._files_lock:
            if file_seq > self._active_seq:
                raise RaftLogError("Purge active or newer files")
            purged = max(0, file_seq - self._first_seq)
            for _ in range(purged):
                self._versions.popleft()
            self._first_seq = max(self._first_seq, file_seq)
        for seq in range(file_seq - purged, file_seq):
            self._path(seq).unlink()
        return purged

    def close(self) -> None:
        """Closes the active file; safe to call more than once."""
        with self._active_lock:
            if self._writer is None:
                return
            writer, self._writer = self._writer, None
            try:
                writer.close()
            except OSError as error:
                logger.error("error while closing single pipe: %s", error)


class DualPipes:
    """Log storage made of an append queue and a rewrite queue in one locked directory."""

    def __init__(self, dir_lock: IO, appender: SinglePipe, rewriter: SinglePipe) -> None:
        if appender.queue != LogQueue.APPEND or rewriter.queue != LogQueue.REWRITE:
            raise ValueError("pipes must serve the append and rewrite queues in that order")
        self._pipes = (appender, rewriter)
        self._dir_lock: IO | None = dir_lock

    def __enter__(self) -> DualPipes:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def read_bytes(self, handle: FileBlockHandle) -> bytes:
        return self._pipes[handle.id.queue].read_bytes(handle)

    def append(self, queue: LogQueue, data: bytes) -> FileBlockHandle:
        return self._pipes[queue].append(data)

    def maybe_sync(self, queue: LogQueue, force: bool = False) -> None:
        self._pipes[queue].maybe_sync(force)

    def file_span(self, queue: LogQueue) -> tuple[int, int]:
        return self._pipes[queue].file_span()

    def total_size(self, queue: LogQueue) -> int:
        return self._pipes[queue].total_size()

    def rotate(self, queue: LogQueue) -> None:
        self._pipes[queue].rotate()

    def purge_to(self, file_id: FileId) -> int:
        return self._pipes[file_id.queue].purge_to(file_id.seq)

    def close(self) -> None:
        """Closes both queues and releases the directory lock."""
        for pipe in self._pipes:
            pipe.close()
        if self._dir_lock is not None:
            lock, self._dir_lock = self._dir_lock, None
            try:
                portalocker.unlock(lock)
            finally:
                lock.close()


def lock_dir(directory: str | Path) -> IO:
    """Creates and exclusively locks the lock file under ``directory``."""
    lock_file = open(lock_file_path(directory), "w")
    try:
        portalocker.lock(lock_file, portalocker.LOCK_EX | portalocker.LOCK_NB)
    except portalocker.LockException as error:
        lock_file.close()
        raise RaftLogError(
            f"Failed to lock file: {error}, maybe another instance is using this directory."
        ) from error
    return lock_file