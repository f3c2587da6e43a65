"""Log items and the lean item batches stored in the footer of a log batch."""

from __future__ import annotations

import enum
import zlib
from dataclasses import dataclass, field, replace
from typing import Iterator, Union

from raftlog.errors import CorruptionError
from raftlog.format import FileBlockHandle, FileId

LOG_BATCH_HEADER_LEN = 16
LOG_BATCH_CHECKSUM_LEN = 4

TYPE_ENTRIES = 0x01
TYPE_COMMAND = 0x02
TYPE_KV = 0x03

_U64_LIMIT = 1 << 64
_U32_LIMIT = 1 << 32
_MAX_VARINT_LEN = 10


class ByteReader:
    """Sequential reader over a byte buffer."""

    def __init__(self, data: bytes | bytearray | memoryview) -> None:
        self._data = memoryview(bytes(data))
        self._pos = 0

    def remaining(self) -> int:
        """Number of bytes not yet consumed."""
        return len(self._data) - self._pos

    def read_u8(self) -> int:
        if self._pos >= len(self._data):
            raise CorruptionError("unexpected end of data")
        value = self._data[self._pos]
        self._pos += 1
        return value

    def read_bytes(self, size: int) -> bytes:
        if size < 0 or size > self.remaining():
            raise CorruptionError(
                f"unexpected end of data: need {size} bytes, have {self.remaining()}"
            )
        chunk = bytes(self._data[self._pos:self._pos + size])
        self._pos += size
        return chunk

    def read_var_u64(self) -> int:
        """Reads an unsigned base-128 varint."""
        result = 0
        shift = 0
        for _ in range(_MAX_VARINT_LEN):
            byte = self.read_u8()
            result |= (byte & 0x7F) << shift
            if byte < 0x80:
                if result >= _U64_LIMIT:
                    break
                return result
            shift += 7
        raise CorruptionError("var u64 overflow")


def encode_var_u64(value: int) -> bytes:
    """Encodes an unsigned 64-bit integer as a base-128 varint."""
    if not 0 <= value < _U64_LIMIT:
        raise ValueError(f"value out of u64 range: {value}")
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def crc32(data: bytes) -> int:
    return zlib.crc32(data) & 0xFFFFFFFF


def verify_checksum(data: bytes) -> None:
    """Checks that ``data`` ends with the little-endian CRC32 of what precedes it."""
    if len(data) <= LOG_BATCH_CHECKSUM_LEN:
        raise CorruptionError(f"Content too short {len(data)}")
    body = bytes(data[:-LOG_BATCH_CHECKSUM_LEN])
    expected = int.from_bytes(data[-LOG_BATCH_CHECKSUM_LEN:], "little")
    actual = crc32(body)
    if actual != expected:
        raise CorruptionError(f"Checksum expected {expected} but got {actual}")


class CompressionType(enum.IntEnum):
    NONE = 0
    LZ4 = 1

    @classmethod
    def from_u8(cls, value: int) -> CompressionType:
        try:
            return cls(value)
        except ValueError:
            raise CorruptionError(f"Unrecognized compression type: {value}") from None


@dataclass
class EntryIndex:
    """Position of one log entry inside the entries block of a log batch."""

    index: int = 0
    entry_offset: int = 0
    entry_len: int = 0
    compression_type: CompressionType = CompressionType.NONE
    entries: FileBlockHandle | None = None


@dataclass
class EntryIndexes:
    """A run of consecutive entry indexes: { count | first index | [tail offsets] }."""

    indexes: list[EntryIndex] = field(default_factory=list)

    def __iter__(self) -> Iterator[EntryIndex]:
        return iter(self.indexes)

    def __len__(self) -> int:
        return len(self.indexes)

    def encode(self) -> bytes:
        out = bytearray(encode_var_u64(len(self.indexes)))
        if self.indexes:
            out += encode_var_u64(self.indexes[0].index)
        for ei in self.indexes:
            out += encode_var_u64(ei.entry_offset + ei.entry_len)
        return bytes(out)

    @classmethod
    def decode(cls, reader: ByteReader, entries_size: int = 0) -> tuple[EntryIndexes, int]:
        """Decodes indexes; returns them with the updated total entries size."""
        count = reader.read_var_u64()
        index = reader.read_var_u64() if count > 0 else 0
        indexes = []
        for _ in range(count):
            tail = reader.read_var_u64()
            if tail >= _U32_LIMIT or tail < entries_size:
                raise CorruptionError(f"Invalid entry tail offset: {tail}")
            entry_len = tail - entries_size
            indexes.append(
                EntryIndex(index=index, entry_offset=entries_size, entry_len=entry_len)
            )
            entries_size += entry_len
            index += 1
        return cls(indexes), entries_size

    def approximate_size(self) -> int:
        return 8 + (8 if self.indexes else 0) + 8 * len(self.indexes)


class CommandType(enum.IntEnum):
    CLEAN = 0x01
    COMPACT = 0x02


@dataclass(frozen=True)
class Command:
    """A log command: { type | (index) }."""

    kind: CommandType
    index: int | None = None

    @classmethod
    def clean(cls) -> Command:
        return cls(CommandType.CLEAN)

    @classmethod
    def compact(cls, index: int) -> Command:
        return cls(CommandType.COMPACT, index)

    def encode(self) -> bytes:
        if self.kind == CommandType.CLEAN:
            return bytes([CommandType.CLEAN])
        return bytes([CommandType.COMPACT]) + encode_var_u64(self.index or 0)

    @classmethod
    def decode(cls, reader: ByteReader) -> Command:
        raw = reader.read_u8()
        if raw == CommandType.CLEAN:
            return cls.clean()
        if raw == CommandType.COMPACT:
            return cls.compact(reader.read_var_u64())
        raise CorruptionError(f"Unrecognized command type: {raw}")

    def approximate_size(self) -> int:
        return 1 if self.kind == CommandType.CLEAN else 1 + 8


class OpType(enum.IntEnum):
    PUT = 1
    DEL = 2

    @classmethod
    def from_u8(cls, value: int) -> OpType:
        try:
            return cls(value)
        except ValueError:
            raise CorruptionError(f"Unrecognized op type: {value}") from None


@dataclass
class KeyValue:
    """A key-value operation: { op_type | key len | key | (value len | value) }."""

    op_type: OpType
    key: bytes
    value: bytes | None = None
    file_id: FileId | None = None

    def encode(self) -> bytes:
        out = bytearray([self.op_type])
        out += encode_var_u64(len(self.key))
        out += self.key
        if self.op_type == OpType.PUT:
            value = self.value if self.value is not None else b""
            out += encode_var_u64(len(value))
            out += value
        return bytes(out)

    @classmethod
    def decode(cls, reader: ByteReader) -> KeyValue:
        op_type = OpType.from_u8(reader.read_u8())
        key = reader.read_bytes(reader.read_var_u64())
        if op_type == OpType.PUT:
            value = reader.read_bytes(reader.read_var_u64())
            return cls(OpType.PUT, key, value)
        return cls(OpType.DEL, key, None)

    def approximate_size(self) -> int:
        return 1 + 8 + len(self.key) + 8 + (len(self.value) if self.value is not None else 0)


LogItemContent = Union[EntryIndexes, Command, KeyValue]


@dataclass
class LogItem:
    """One item of a Raft group: { region id | type | content }."""

    raft_group_id: int
    content: LogItemContent

    @classmethod
    def new_entry_indexes(cls, raft_group_id: int, entry_indexes: list[EntryIndex]) -> LogItem:
        return cls(raft_group_id, EntryIndexes(list(entry_indexes)))

    @classmethod
    def new_command(cls, raft_group_id: int, command: Command) -> LogItem:
        return cls(raft_group_id, command)

    @classmethod
    def new_kv(
        cls, raft_group_id: int, op_type: OpType, key: bytes, value: bytes | None
    ) -> LogItem:
        return cls(raft_group_id, KeyValue(op_type, bytes(key), value))

    def encode(self) -> bytes:
        out = bytearray(encode_var_u64(self.raft_group_id))
        if isinstance(self.content, EntryIndexes):
            out.append(TYPE_ENTRIES)
        elif isinstance(self.content, Command):
            out.append(TYPE_COMMAND)
        else:
            out.append(TYPE_KV)
        out += self.content.encode()
        return bytes(out)

    @classmethod
    def decode(cls, reader: ByteReader, entries_size: int = 0) -> tuple[LogItem, int]:
        """Decodes one item; returns it with the updated total entries size."""
        raft_group_id = reader.read_var_u64()
        item_type = reader.read_u8()
        content: LogItemContent
        if item_type == TYPE_ENTRIES:
            content, entries_size = EntryIndexes.decode(reader, entries_size)
        elif item_type == TYPE_COMMAND:
            content = Command.decode(reader)
        elif item_type == TYPE_KV:
            content = KeyValue.decode(reader)
        else:
            raise CorruptionError(f"Unrecognized log item type: {item_type}")
        return cls(raft_group_id, content), entries_size

    def approximate_size(self) -> int:
        return 8 + 1 + self.content.approximate_size()


class LogItemBatch:
    """A lean batch of log items without entry data: { count | [items] | crc32 }."""

    def __init__(self) -> None:
        self._items: list[LogItem] = []
        self._item_size = 0
        self._entries_size = 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LogItemBatch):
            return NotImplemented
        return (
            self._items == other._items
            and self._item_size == other._item_size
            and self._entries_size == other._entries_size
        )

    def __iter__(self) -> Iterator[LogItem]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"LogItemBatch(items={self._items!r})"

    def items(self) -> list[LogItem]:
        return list(self._items)

    def drain(self) -> list[LogItem]:
        """Removes and returns every item, leaving the batch empty."""
        items, self._items = self._items, []
        self._item_size = 0
        self._entries_size = 0
        return items

    def push(self, item: LogItem) -> None:
        self._item_size += item.approximate_size()
        self._items.append(item)

    def merge(self, rhs: LogItemBatch) -> None:
        """Moves all items of ``rhs`` into this batch, leaving ``rhs`` empty."""
        for item in rhs._items:
            if isinstance(item.content, EntryIndexes):
                for ei in item.content:
                    ei.entry_offset += self._entries_size
        self._item_size += rhs._item_size
        self._entries_size += rhs._entries_size
        self._items.extend(rhs._items)
        rhs._items = []
        rhs._item_size = 0
        rhs._entries_size = 0

    def finish_populate(self, compression_type: CompressionType) -> None:
        for item in self._items:
            if isinstance(item.content, EntryIndexes):
                for ei in item.content:
                    ei.compression_type = compression_type

    def finish_write(self, handle: FileBlockHandle) -> None:
        for item in self._items:
            if isinstance(item.content, EntryIndexes):
                for ei in item.content:
                    ei.entries = replace(handle)
            elif isinstance(item.content, KeyValue):
                item.content.file_id = handle.id

    def add_entry_indexes(self, region_id: int, entry_indexes: list[EntryIndex]) -> None:
        for ei in entry_indexes:
            ei.entry_offset = self._entries_size
            self._entries_size += ei.entry_len
        self.push(LogItem.new_entry_indexes(region_id, entry_indexes))

    def add_command(self, region_id: int, command: Command) -> None:
        self.push(LogItem.new_command(region_id, command))

    def delete(self, region_id: int, key: bytes) -> None:
        self.push(LogItem.new_kv(region_id, OpType.DEL, key, None))

    def put(self, region_id: int, key: bytes, value: bytes) -> None:
        self.push(LogItem.new_kv(region_id, OpType.PUT, key, bytes(value)))

    def encode(self) -> bytes:
        out = bytearray(encode_var_u64(len(self._items)))
        for item in self._items:
            out += item.encode()
        out += crc32(bytes(out)).to_bytes(LOG_BATCH_CHECKSUM_LEN, "little")
        return bytes(out)

    @classmethod
    def decode(
        cls,
        data: bytes,
        entries: FileBlockHandle,
        compression_type: CompressionType,
    ) -> LogItemBatch:
        """Decodes a footer; ``entries`` locates the block of encoded entries."""
        data = bytes(data)
        verify_checksum(data)
        reader = ByteReader(data[:-LOG_BATCH_CHECKSUM_LEN])
        count = reader.read_var_u64()
        batch = cls()
        entries_size = 0
        for _ in range(count):
            item, entries_size = LogItem.decode(reader, entries_size)
            batch.push(item)
        batch._entries_size = entries_size
        for item in batch._items:
            if isinstance(item.content, EntryIndexes):
                for ei in item.content:
                    ei.compression_type = compression_type
                    ei.entries = replace(entries)
            elif isinstance(item.content, KeyValue):
                item.content.file_id = entries.id
        return batch

    def approximate_size(self) -> int:
        return 8 + self._item_size + LOG_BATCH_CHECKSUM_LEN