"""Utilities for inspecting the log items stored in log files."""

from __future__ import annotations

from collections import deque
from pathlib import Path
from typing import Iterable

from raftlog.batch_reader import LogItemBatchFileReader
from raftlog.errors import InvalidArgumentError, RaftLogError
from raftlog.format import FileId
from raftlog.items import LogItem
from raftlog.log_file import build_file_reader


class LogItemReader:
    """An iterator over the log items of a sequence of log files.

    A failure while reading raises from ``next``; iteration may go on with
    the following file afterwards.
    """

    def __init__(self, files: Iterable[tuple[FileId, Path]]) -> None:
        self._files: deque[tuple[FileId, Path]] = deque(files)
        self._batch_reader = LogItemBatchFileReader(0)
        self._items: deque[LogItem] = deque()

    @classmethod
    def new_file_reader(cls, path: str | Path) -> LogItemReader:
        """Reads the items of one log file."""
        path = Path(path)
        if not path.is_file():
            raise InvalidArgumentError(f"Not a file: {path}")
        file_id = FileId.parse_file_name(path.name)
        if file_id is None:
            raise InvalidArgumentError(f"Invalid log file name: {path.name}")
        return cls([(file_id, path)])

    @classmethod
    def new_directory_reader(cls, directory: str | Path) -> LogItemReader:
        """Reads the items of every log file in ``directory``, ordered by file id."""
        directory = Path(directory)
        if not directory.is_dir():
            raise InvalidArgumentError(f"Not a directory: {directory}")
        files = []
        for entry in directory.iterdir():
            if not entry.is_file():
                continue
            file_id = FileId.parse_file_name(entry.name)
            if file_id is not None:
                files.append((file_id, entry))
        files.sort(key=lambda pair: pair[0])
        return cls(files)

    def __iter__(self) -> LogItemReader:
        return self

    def __next__(self) -> LogItem:
        if not self._items:
            try:
                batch = self._batch_reader.next_batch()
                if batch is not None:
                    self._items.extend(batch.drain())
                else:
                    self._find_next_readable_file()
            except (RaftLogError, OSError):
                self._batch_reader.reset()
                raise
        if not self._items:
            self._batch_reader.reset()
            raise StopIteration
        return self._items.popleft()

    def _find_next_readable_file(self) -> None:
        while self._files:
            file_id, path = self._files.popleft()
            self._batch_reader.open(file_id, build_file_reader(path))
            batch = self._batch_reader.next_batch()
            if batch is not None:
                self._items.extend(batch.drain())
                break