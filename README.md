# raftlog

`raftlog` stores the logs of Raft groups as append-only files in one
directory. It covers the on-disk format, reading and writing, and recovery.

## What is in the package

- `raftlog.batch.LogBatch` builds a batch of log content:
  - raw entries, added with `add_entries(region_id, [(index, data), ...])` or
    `add_raw_entries`;
  - commands, `Command.clean()` and `Command.compact(index)` from
    `raftlog.items`;
  - key/value puts and deletes.

  `finish_populate(compression_threshold)` seals the batch. The sealed batch
  has a header, an entries block with a CRC32 checksum, and a checksummed
  footer of items. When the threshold is positive and the entries reach it,
  the entries block is LZ4-compressed. `encoded_bytes()` returns the result.
  `finish_write(handle)` records where the batch was stored. `drain()`
  returns the items and reopens the batch for use. A batch refuses entries
  beyond 2 GiB minus one byte in total and raises `FullError`.
- `raftlog.items` holds `LogItem`, `LogItemBatch`, `EntryIndex`,
  `EntryIndexes`, `Command`, `KeyValue`, `OpType`, `CompressionType` and
  their binary encodings (base-128 varints, `ByteReader`,
  `verify_checksum`).
- `raftlog.format` holds `LogQueue` (`APPEND`, `REWRITE`), `FileId`,
  `FileBlockHandle`, `Version` and `LogFileFormat`, the magic header with
  which every log file begins.
- `raftlog.log_file` provides `build_file_writer(path, version, create)`, an
  append-only `LogFileWriter`, and `build_file_reader(path, version)`, a
  random-access `LogFileReader`.
- `raftlog.pipe` provides `SinglePipe`, one queue of numbered files, and
  `DualPipes`, an append queue and a rewrite queue together:
  - `append` stores data.
  - `maybe_sync` rotates to a new file once the active one reaches
    `target_file_size`. Otherwise it syncs when `bytes_per_sync` bytes are
    unsynced, or when forced.
  - `purge_to` deletes older files.
  - `lock_dir` holds an exclusive lock on a `LOCK` file in the directory.

  Settings live in `PipeConfig`.
- `raftlog.pipe_builder.DualPipesBuilder` works through a directory in three
  steps:
  - `scan()` finds the log files. It creates the directory if it is missing.
  - `recover(factory)` replays every `LogItemBatch` into your own
    `ReplayMachine` subclasses, using a thread pool.
  - `finish()` opens the `DualPipes`.

  `recover_queue(RecoveryConfig(...), factory)` replays a single queue.
  `RecoveryMode` decides what happens to corrupted data:
  - `ABSOLUTE_CONSISTENCY` fails.
  - `TOLERATE_TAIL_CORRUPTION` truncates the last file.
  - `TOLERATE_ANY_CORRUPTION` truncates any corrupted file.
- `raftlog.batch_reader.LogItemBatchFileReader` reads the batches of one
  file in order. `raftlog.debug.LogItemReader` is an iterator over the log
  items of one file (`new_file_reader`) or of a whole directory in file
  order (`new_directory_reader`).
- `raftlog.stats.GlobalStats` counts live entries per queue. Its counters are
  thread-safe.

## Installation

```
pip install .
```

The `test` extra installs pytest for the test suite:

```
pip install .[test]
```

## Examples

### Writing and inspecting a single log file

```python
import tempfile

from raftlog.batch import LogBatch
from raftlog.debug import LogItemReader
from raftlog.format import FileId, LogQueue, Version
from raftlog.items import Command
from raftlog.log_file import build_file_writer

batch = LogBatch()
batch.add_entries(7, [(1, b"first"), (2, b"second")])
batch.put(7, b"key", b"value")
batch.add_command(7, Command.compact(2))
batch.finish_populate(0)

directory = tempfile.mkdtemp()
path = FileId(LogQueue.APPEND, 1).build_file_path(directory)
writer = build_file_writer(path, Version.V1, True)
writer.write(batch.encoded_bytes(), 0)
writer.close()

for item in LogItemReader.new_file_reader(path):
    print(item.raft_group_id, item.content)
```

### Recovering a directory and appending to it

```python
from raftlog.batch import LogBatch
from raftlog.format import LogQueue
from raftlog.pipe import PipeConfig
from raftlog.pipe_builder import DualPipesBuilder, ReplayMachine


class CountingMachine(ReplayMachine):
    def __init__(self):
        self.items = 0

    def replay(self, item_batch, file_id):
        self.items += len(item_batch)

    def merge(self, rhs, queue):
        self.items += rhs.items


builder = DualPipesBuilder(PipeConfig(directory="raft-logs"))
builder.scan()
append_state, rewrite_state = builder.recover(CountingMachine)

with builder.finish() as pipes:
    batch = LogBatch()
    batch.put(1, b"key", b"value")
    batch.finish_populate(0)
    handle = pipes.append(LogQueue.APPEND, batch.encoded_bytes())
    batch.finish_write(handle)
    pipes.maybe_sync(LogQueue.APPEND, force=True)
    assert pipes.read_bytes(handle) == batch.encoded_bytes()
```

Call `recover` before `finish`. Recovery reads each file's format version,
and the pipes need it. While the builder or the pipes are alive they hold
the directory lock. A second instance on the same directory gets a
`RaftLogError`.

## File layout

A file name is a 16-digit zero-padded sequence number followed by a suffix:
`.raftlog` for the append queue and `.rewrite` for the rewrite queue. For
example, `0000000000000123.raftlog`. `FileId.parse_file_name` and
`FileId.build_file_name` convert between names and ids.

## Errors

Errors are subclasses of `raftlog.errors.RaftLogError`:

- `CorruptionError` for damaged or malformed data;
- `FullError` when a batch cannot hold more entries;
- `InvalidArgumentError` for bad paths or file names.

Calling a `LogBatch` method at the wrong point, such as `encoded_bytes()`
before `finish_populate`, raises `RuntimeError`.

## What the package does not do

`raftlog` is the storage layer only. It has no in-memory index of entries per
Raft group, so it cannot look up entries by index or by key. Such state has
to be rebuilt in your own `ReplayMachine`. It has no engine that decides
when to rewrite or purge files; `purge_to` and `rotate` run only when you
call them. There is no command-line tool and no server.