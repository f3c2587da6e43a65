import copy

import pytest

from raftlog.errors import CorruptionError
from raftlog.format import FileBlockHandle, FileId, LogQueue
from raftlog.items import (
    ByteReader,
    Command,
    CommandType,
    CompressionType,
    EntryIndex,
    EntryIndexes,
    KeyValue,
    LogItem,
    LogItemBatch,
    OpType,
    encode_var_u64,
    verify_checksum,
)


def generate_entry_indexes(begin, end, file_id=None):
    handle = FileBlockHandle(file_id, 0, 0) if file_id is not None else None
    return [
        EntryIndex(index=i, entry_len=1, entries=copy.deepcopy(handle))
        for i in range(begin, end)
    ]


def encode_and_decode(entry_indexes):
    entries_size = 0
    for idx in entry_indexes:
        idx.entry_offset = entries_size
        entries_size += idx.entry_len
    encoded = EntryIndexes(list(entry_indexes)).encode()
    reader = ByteReader(encoded)
    decoded, decoded_size = EntryIndexes.decode(reader, 0)
    assert reader.remaining() == 0
    assert decoded.approximate_size() >= len(encoded)
    assert decoded_size == entries_size
    return decoded


@pytest.mark.parametrize("indexes", [[], generate_entry_indexes(7, 17)])
def test_entry_indexes_enc_dec(indexes):
    decoded = encode_and_decode(indexes)
    assert decoded.indexes == indexes


def test_entry_indexes_with_file_id_lose_location():
    indexes = generate_entry_indexes(7, 17, FileId(LogQueue.APPEND, 7))
    decoded = encode_and_decode(indexes)
    assert decoded.indexes != indexes
    assert all(ei.entries is None for ei in decoded.indexes)
    assert [ei.index for ei in decoded.indexes] == list(range(7, 17))


@pytest.mark.parametrize("cmd", [Command.clean(), Command.compact(7)])
def test_command_enc_dec(cmd):
    encoded = bytearray(cmd.encode())
    reader = ByteReader(encoded)
    decoded = Command.decode(reader)
    assert reader.remaining() == 0
    assert decoded.approximate_size() >= len(encoded)
    assert decoded == cmd

    encoded[0] = 7
    with pytest.raises(CorruptionError, match="^Unrecognized command type: 7$"):
        Command.decode(ByteReader(encoded))


def test_command_bytes():
    assert Command.clean().encode() == b"\x01"
    assert Command.compact(7).encode() == b"\x02\x07"
    assert Command.compact(7).kind == CommandType.COMPACT


@pytest.mark.parametrize(
    "kv",
    [
        KeyValue(OpType.PUT, b"put", b"put_v"),
        KeyValue(OpType.DEL, b"del", None),
    ],
)
def test_kv_enc_dec(kv):
    encoded = bytearray(kv.encode())
    reader = ByteReader(encoded)
    decoded = KeyValue.decode(reader)
    assert reader.remaining() == 0
    assert decoded.approximate_size() >= len(encoded)
    assert decoded == kv

    encoded[0] = 7
    with pytest.raises(CorruptionError, match="^Unrecognized op type: 7$"):
        KeyValue.decode(ByteReader(encoded))


def test_del_with_value_drops_value():
    kv = KeyValue(OpType.DEL, b"del", b"del_v")
    reader = ByteReader(kv.encode())
    decoded = KeyValue.decode(reader)
    assert reader.remaining() == 0
    assert decoded.value is None


@pytest.mark.parametrize(
    "item",
    [
        LogItem.new_entry_indexes(7, generate_entry_indexes(7, 17)),
        LogItem.new_command(17, Command.compact(7)),
        LogItem.new_kv(27, OpType.PUT, b"key", b"value"),
    ],
)
def test_log_item_enc_dec(item):
    item = copy.deepcopy(item)
    entries_size = 0
    if isinstance(item.content, EntryIndexes):
        for idx in item.content:
            idx.entry_offset = entries_size
            entries_size += idx.entry_len
    encoded = bytearray(item.encode())
    reader = ByteReader(encoded)
    decoded, decoded_size = LogItem.decode(reader, 0)
    assert reader.remaining() == 0
    assert decoded_size == entries_size
    assert decoded.approximate_size() >= len(encoded)
    assert decoded == item

    reader = ByteReader(encoded)
    reader.read_var_u64()
    type_pos = len(encoded) - reader.remaining()
    encoded[type_pos] = 7
    with pytest.raises(CorruptionError, match="^Unrecognized log item type: 7$"):
        LogItem.decode(ByteReader(encoded), 0)


def _populated_batch():
    batch = LogItemBatch()
    batch.add_entry_indexes(7, generate_entry_indexes(1, 5))
    batch.add_entry_indexes(107, generate_entry_indexes(100, 105))
    batch.add_command(7, Command.clean())
    batch.put(7, b"key", b"value")
    batch.delete(7, b"key2")
    return batch


@pytest.mark.parametrize("make_batch", [LogItemBatch, _populated_batch])
@pytest.mark.parametrize("compression", [CompressionType.LZ4, CompressionType.NONE])
def test_log_item_batch_enc_dec(make_batch, compression):
    batch = make_batch()
    batch.finish_populate(compression)
    batch.finish_write(FileBlockHandle.dummy(LogQueue.APPEND))
    encoded = batch.encode()
    decoded = LogItemBatch.decode(
        encoded, FileBlockHandle.dummy(LogQueue.APPEND), compression
    )
    assert decoded.approximate_size() >= len(encoded)
    assert decoded == batch


def test_empty_batch_encoding_is_count_and_checksum():
    encoded = LogItemBatch().encode()
    assert len(encoded) == 5
    assert encoded[0] == 0


def test_batch_decode_detects_corruption():
    encoded = bytearray(_populated_batch().encode())
    encoded[1] ^= 0xFF
    with pytest.raises(CorruptionError, match="Checksum expected"):
        LogItemBatch.decode(
            encoded, FileBlockHandle.dummy(LogQueue.APPEND), CompressionType.NONE
        )


def test_batch_merge_shifts_offsets_and_empties_rhs():
    left = LogItemBatch()
    left.add_entry_indexes(1, [EntryIndex(index=1, entry_len=10)])
    right = LogItemBatch()
    right.add_entry_indexes(1, [EntryIndex(index=2, entry_len=5)])
    right.put(1, b"k", b"v")
    left.merge(right)
    assert len(right) == 0
    assert right.approximate_size() == 12
    items = left.items()
    assert len(items) == 3
    assert items[1].content.indexes[0].entry_offset == 10


def test_batch_drain_resets():
    batch = _populated_batch()
    drained = batch.drain()
    assert len(drained) == 5
    assert batch.items() == []
    assert batch.approximate_size() == 12


def test_finish_write_sets_locations():
    batch = _populated_batch()
    handle = FileBlockHandle(FileId(LogQueue.REWRITE, 3), 16, 100)
    batch.finish_write(handle)
    items = batch.items()
    assert items[0].content.indexes[0].entries == handle
    assert items[3].content.file_id == FileId(LogQueue.REWRITE, 3)


def test_var_u64_round_trip_and_bytes():
    assert encode_var_u64(300) == b"\xac\x02"
    for value in [0, 1, 127, 128, 2**32, 2**64 - 1]:
        assert ByteReader(encode_var_u64(value)).read_var_u64() == value
    with pytest.raises(ValueError):
        encode_var_u64(2**64)


def test_byte_reader_truncated():
    with pytest.raises(CorruptionError):
        ByteReader(b"\x80").read_var_u64()
    with pytest.raises(CorruptionError):
        ByteReader(b"ab").read_bytes(3)


def test_verify_checksum_errors():
    with pytest.raises(CorruptionError, match="^Content too short 4$"):
        verify_checksum(b"\x00\x00\x00\x00")
    with pytest.raises(CorruptionError, match="Checksum expected"):
        verify_checksum(b"data\x00\x00\x00\x00")


def test_compression_and_op_type_from_u8():
    assert CompressionType.from_u8(1) == CompressionType.LZ4
    with pytest.raises(CorruptionError, match="^Unrecognized compression type: 2$"):
        CompressionType.from_u8(2)
    assert OpType.from_u8(2) == OpType.DEL
    with pytest.raises(CorruptionError, match="^Unrecognized op type: 0$"):
        OpType.from_u8(0)