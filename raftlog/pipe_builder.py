"""Scanning a log directory and replaying its files to rebuild in-memory state."""

from __future__ import annotations

import abc
import logging
import os
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Generic, TypeVar

from raftlog.batch_reader import LogItemBatchFileReader
from raftlog.errors import RaftLogError
from raftlog.format import FileId, LogFileFormat, LogQueue, Version
from raftlog.items import LogItemBatch
from raftlog.log_file import build_file_reader
from raftlog.pipe import DualPipes, PipeConfig, RecoveryMode, SinglePipe, lock_dir

logger = logging.getLogger(__name__)


class ReplayMachine(abc.ABC):
    """A deterministic state machine fed with log items that obeys the associative law.

    Log items arranged in order can be split and replayed to several machines;
    merging them in order gives the same state as replaying all items to one.
    """

    @abc.abstractmethod
    def replay(self, item_batch: LogItemBatch, file_id: FileId) -> None:
        """Consumes a batch of log items read from ``file_id``."""

    @abc.abstractmethod
    def merge(self, rhs: ReplayMachine, queue: LogQueue) -> None:
        """Absorbs a machine that has consumed newer items of the same sequence."""


M = TypeVar("M", bound=ReplayMachine)
MachineFactory = Callable[[], M]


@dataclass
class RecoveryConfig:
    """Basic settings of the recovery of one queue."""

    queue: LogQueue
    mode: RecoveryMode
    concurrency: int
    read_block_size: int


@dataclass
class _FileToRecover:
    seq: int
    path: Path
    version: Version | None = None


def _truncate(path: Path, size: int) -> None:
    with open(path, "r+b") as handle:
        handle.truncate(size)


def _recover_chunk(
    queue: LogQueue,
    mode: RecoveryMode,
    read_block_size: int,
    chunk: list[_FileToRecover],
    is_last_chunk: bool,
    machine_factory: Callable[[], M],
) -> M:
    machine = machine_factory()
    reader = LogItemBatchFileReader(read_block_size)
    try:
        for position, file in enumerate(chunk):
            is_last_file = is_last_chunk and position == len(chunk) - 1
            file_id = FileId(queue, file.seq)
            try:
                file_reader = build_file_reader(file.path)
            except (RaftLogError, OSError) as error:
                is_local_tail = file.path.stat().st_size <= LogFileFormat.length()
                if mode is RecoveryMode.TOLERATE_ANY_CORRUPTION or (
                    mode is RecoveryMode.TOLERATE_TAIL_CORRUPTION
                    and is_last_file
                    and is_local_tail
                ):
                    logger.warning(
                        "File header is corrupted but ignored: %s:%d, %s",
                        queue.name, file.seq, error,
                    )
                    _truncate(file.path, 0)
                    file.version = Version.V1
                    continue
                logger.error(
                    "Failed to open log file due to broken header: %s:%d",
                    queue.name, file.seq,
                )
                raise
            reader.open(file_id, file_reader)
            file.version = file_reader.file_format().version
            while True:
                try:
                    batch = reader.next_batch()
                except (RaftLogError, OSError) as error:
                    tolerated = (
                        mode is RecoveryMode.TOLERATE_TAIL_CORRUPTION and is_last_file
                    ) or mode is RecoveryMode.TOLERATE_ANY_CORRUPTION
                    valid_offset = reader.valid_offset()
                    if not tolerated:
                        logger.error(
                            "Failed to open log file due to broken entry: %s:%d offset=%d",
                            queue.name, file.seq, valid_offset,
                        )
                        raise
                    logger.warning(
                        "File is corrupted but ignored: %s:%d, %s",
                        queue.name, file.seq, error,
                    )
                    reader.reset()
                    _truncate(file.path, valid_offset)
                    break
                if batch is None:
                    break
                machine.replay(batch, file_id)
    finally:
        reader.reset()
    return machine


def _submit_queue(
    pool: ThreadPoolExecutor,
    recovery_config: RecoveryConfig,
    files: list[_FileToRecover],
    machine_factory: Callable[[], M],
) -> list[Future]:
    if recovery_config.concurrency <= 0 or not files:
        return []
    chunk_size = max(-(-len(files) // recovery_config.concurrency), 1)
    chunks = [files[start:start + chunk_size] for start in range(0, len(files), chunk_size)]
    return [
        pool.submit(
            _recover_chunk,
            recovery_config.queue,
            recovery_config.mode,
            recovery_config.read_block_size,
            chunk,
            number == len(chunks) - 1,
            machine_factory,
        )
        for number, chunk in enumerate(chunks)
    ]


def _collect(futures: list[Future], queue: LogQueue, machine_factory: Callable[[], M]) -> M:
    machine = machine_factory()
    for future in futures:
        machine.merge(future.result(), queue)
    return machine


class DualPipesBuilder(Generic[M]):
    """Builds ``DualPipes`` from a directory, recovering custom state on the way."""

    def __init__(self, config: PipeConfig) -> None:
        self._config = config
        self._dir_lock: IO | None = None
        self._files: dict[LogQueue, list[_FileToRecover]] = {
            LogQueue.APPEND: [],
            LogQueue.REWRITE: [],
        }

    def _lock(self, directory: Path) -> None:
        if self._dir_lock is None:
            self._dir_lock = lock_dir(directory)

    def scan(self) -> None:
        """Finds all log files in the directory, creating the directory if missing."""
        directory = Path(self._config.directory)
        self._files = {LogQueue.APPEND: [], LogQueue.REWRITE: []}
        if not directory.exists():
            logger.info("Create raft log directory: %s", directory)
            directory.mkdir()
            self._lock(directory)
            return
        if not directory.is_dir():
            raise RaftLogError(f"Not directory: {directory}")
        self._lock(directory)

        spans: dict[LogQueue, tuple[int, int]] = {}
        for entry in directory.iterdir():
            if not entry.is_file():
                continue
            file_id = FileId.parse_file_name(entry.name)
            if file_id is None:
                continue
            low, high = spans.get(file_id.queue, (file_id.seq, file_id.seq))
            spans[file_id.queue] = (min(low, file_id.seq), max(high, file_id.seq))

        for queue, (low, high) in spans.items():
            if high == 0:
                continue
            files: list[_FileToRecover] = []
            for seq in range(low, high + 1):
                file_id = FileId(queue, seq)
                path = file_id.build_file_path(directory)
                if not path.exists():
                    logger.warning(
                        "Detected a hole when scanning directory, discarding files before %s.",
                        file_id,
                    )
                    files.clear()
                else:
                    files.append(_FileToRecover(seq, path))
            self._files[queue] = files

    def recover(self, machine_factory: Callable[[], M]) -> tuple[M, M]:
        """Replays every scanned file; returns the append and rewrite machines."""
        threads = self._config.recovery_threads
        appends = len(self._files[LogQueue.APPEND])
        rewrites = len(self._files[LogQueue.REWRITE])
        if appends > 0 and rewrites > 0:
            append_threads = max(1, threads * appends // (appends + rewrites))
            rewrite_threads = max(1, max(0, threads - append_threads))
        else:
            append_threads = rewrite_threads = threads
        configs = [
            RecoveryConfig(
                LogQueue.APPEND,
                self._config.recovery_mode,
                append_threads,
                self._config.recovery_read_block_size,
            ),
            RecoveryConfig(
                LogQueue.REWRITE,
                self._config.recovery_mode,
                rewrite_threads,
                self._config.recovery_read_block_size,
            ),
        ]
        with ThreadPoolExecutor(max_workers=max(1, threads)) as pool:
            jobs = [
                (cfg.queue, _submit_queue(pool, cfg, self._files[cfg.queue], machine_factory))
                for cfg in configs
            ]
            append, rewrite = (
                _collect(futures, queue, machine_factory) for queue, futures in jobs
            )
        return append, rewrite

    def recover_queue(
        self, recovery_config: RecoveryConfig, machine_factory: Callable[[], M]
    ) -> M:
        """Replays the scanned files of one queue into machines from ``machine_factory``."""
        files = self._files[recovery_config.queue]
        with ThreadPoolExecutor(max_workers=max(1, recovery_config.concurrency)) as pool:
            futures = _submit_queue(pool, recovery_config, files, machine_factory)
            return _collect(futures, recovery_config.queue, machine_factory)

    def _build_pipe(self, queue: LogQueue) -> SinglePipe:
        files = self._files[queue]
        versions = []
        for file in files:
            if file.version is None:
                raise RuntimeError(f"log file {file.path} has not been recovered")
            versions.append(file.version)
        first_seq = files[0].seq if files else 0
        return SinglePipe.open(self._config, queue, first_seq, versions)

    def finish(self) -> DualPipes:
        """Builds the storage holding every available log file."""
        if self._dir_lock is None:
            raise RuntimeError("log directory has not been scanned")
        appender = self._build_pipe(LogQueue.APPEND)
        try:
            rewriter = self._build_pipe(LogQueue.REWRITE)
        except BaseException:
            appender.close()
            raise
        lock, self._dir_lock = self._dir_lock, None
        return DualPipes(lock, appender, rewriter)