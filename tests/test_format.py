from pathlib import Path

import pytest

from raftlog.errors import CorruptionError
from raftlog.format import (
    LOG_FILE_MAGIC_HEADER,
    FileBlockHandle,
    FileId,
    LogFileFormat,
    LogQueue,
    Version,
    lock_file_path,
)


def test_file_name():
    file_name = "0000000000000123.raftlog"
    file_id = FileId(LogQueue.APPEND, 123)
    assert FileId.parse_file_name(file_name) == file_id
    assert file_id.build_file_name() == file_name

    file_name = "0000000000000123.rewrite"
    file_id = FileId(LogQueue.REWRITE, 123)
    assert FileId.parse_file_name(file_name) == file_id
    assert file_id.build_file_name() == file_name

    for case in ["0000000000000123.log", "123.rewrite"]:
        assert FileId.parse_file_name(case) is None


def test_file_name_with_non_digit_prefix_is_rejected():
    assert FileId.parse_file_name("00000000000001x3.raftlog") is None


def test_build_file_path_joins_directory(tmp_path):
    file_id = FileId(LogQueue.REWRITE, 7)
    path = file_id.build_file_path(tmp_path)
    assert path == Path(tmp_path) / file_id.build_file_name()
    assert FileId.parse_file_name(path.name) == file_id


def test_file_ids_order_by_queue_then_seq():
    ids = [
        FileId(LogQueue.REWRITE, 1),
        FileId(LogQueue.APPEND, 9),
        FileId(LogQueue.APPEND, 2),
    ]
    assert sorted(ids) == [
        FileId(LogQueue.APPEND, 2),
        FileId(LogQueue.APPEND, 9),
        FileId(LogQueue.REWRITE, 1),
    ]


def test_dummy_handles():
    handle = FileBlockHandle.dummy(LogQueue.APPEND)
    assert handle.id == FileId.dummy(LogQueue.APPEND)
    assert handle.offset == 0
    assert handle.length == 0


def test_version():
    version = LogFileFormat().version
    assert int(Version.V1) == int(version)
    assert Version(1) == version
    assert Version.is_valid(1)
    assert not Version.is_valid(2)


def test_file_header():
    header1 = LogFileFormat()
    assert int(header1.version) == 1
    header2 = LogFileFormat(Version.V1)
    assert int(header2.version) == int(header1.version)
    header3 = LogFileFormat(Version.V1)
    assert header3.version == header1.version


def test_header_encoding_and_round_trip():
    encoded = LogFileFormat(Version.V1).encode()
    assert encoded == LOG_FILE_MAGIC_HEADER + b"\x00" * 7 + b"\x01"
    assert len(encoded) == LogFileFormat.length()
    assert LogFileFormat.decode(encoded + b"trailing") == LogFileFormat(Version.V1)


def test_header_too_short():
    with pytest.raises(CorruptionError, match="log file header too short"):
        LogFileFormat.decode(LOG_FILE_MAGIC_HEADER)


def test_header_magic_mismatch():
    data = bytearray(LogFileFormat().encode())
    data[0] += 1
    with pytest.raises(CorruptionError, match="log file magic header mismatch"):
        LogFileFormat.decode(bytes(data))


def test_header_unknown_version():
    data = LOG_FILE_MAGIC_HEADER + (2).to_bytes(8, "big")
    with pytest.raises(CorruptionError, match="unrecognized log file version: 2"):
        LogFileFormat.decode(data)


def test_lock_file_path(tmp_path):
    assert lock_file_path(tmp_path) == Path(tmp_path) / "LOCK"