from __future__ import annotations

import bz2
import hashlib
import io
import lzma
import os
import tracemalloc
from pathlib import Path

import pytest

from payload_extract.errors import PayloadCodecError, PayloadFormatError, PayloadIOError
from payload_extract.executor import apply_operation, extract_selected, replay_operations
from payload_extract.header import PayloadHeader
from payload_extract.manifest import (
    BLOCK_SIZE, OP_REPLACE, OP_REPLACE_BZ, OP_REPLACE_XZ, OP_SOURCE_BSDIFF, OP_SOURCE_COPY,
    OP_ZERO, Extent, Operation, PartitionUpdate,
)

PREFIX = b"\xaa" * 100


class ShortWriter(io.RawIOBase):
    """Accepts at most `limit` bytes per write call"""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.data = bytearray()

    def writable(self) -> bool:
        return True

    def write(self, b) -> int:
        n = min(len(b), self.limit)
        self.data += bytes(b[:n])
        return n


def _op(op_type: int, data: bytes = b"", offset: int = 0, blocks: int = 1, **kw) -> Operation:
    return Operation(
        op_type=op_type,
        data_offset=offset,
        data_length=len(data),
        dst_extents=[Extent(0, blocks)],
        **kw,
    )


def _run(op: Operation, source: bytes, verify: bool = True) -> bytes:
    f_in = io.BytesIO(PREFIX + source)
    f_out = io.BytesIO()
    _ = apply_operation(f_in, len(PREFIX), op, f_out, "boot", verify)
    return f_out.getvalue()


def test_replace_copies_exactly_the_source_window() -> None:
    source = bytes(range(256)) * 8
    op = Operation(OP_REPLACE, data_offset=16, data_length=1000, dst_extents=[Extent(0, 1)])

    assert _run(op, source) == source[16:1016]


@pytest.mark.parametrize(
    ("op_type", "compress"),
    [(OP_REPLACE_XZ, lzma.compress), (OP_REPLACE_BZ, bz2.compress)],
    ids=["xz", "bz2"],
)
def test_compressed_replace_reproduces_original(op_type: int, compress) -> None:
    original = os.urandom(3000) + b"\x00" * 5192
    packed = compress(original)

    assert _run(_op(op_type, packed, blocks=2), packed) == original


def test_compressed_window_is_bounded_by_data_length() -> None:
    original = b"kernel" * 1000
    packed = lzma.compress(original)
    op = _op(OP_REPLACE_XZ, packed)

    # garbage right after the window must never reach the decoder
    assert _run(op, packed + b"\xde\xad\xbe\xef" * 64) == original


def test_zero_writes_num_blocks_of_zeroes() -> None:
    op = Operation(OP_ZERO, dst_extents=[Extent(5, 3), Extent(100, 7)])

    assert _run(op, b"") == bytes(3 * BLOCK_SIZE)


def test_zero_fill_into_short_destination_fails() -> None:
    op = Operation(OP_ZERO, dst_extents=[Extent(0, 1)])
    out = ShortWriter(limit=1000)

    with pytest.raises(PayloadFormatError, match="Zero-fill mismatch for partition boot"):
        _ = apply_operation(io.BytesIO(b""), 0, op, out, "boot")


def test_replace_into_short_destination_fails() -> None:
    data = b"x" * 4096
    out = ShortWriter(limit=10)

    with pytest.raises(PayloadIOError, match="Short write"):
        _ = apply_operation(io.BytesIO(data), 0, _op(OP_REPLACE, data), out, "boot")


def test_empty_destination_extents_name_the_partition() -> None:
    op = Operation(OP_REPLACE, data_length=4, dst_extents=[])

    with pytest.raises(PayloadFormatError, match="Invalid destination extents for partition: vendor"):
        _ = apply_operation(io.BytesIO(b"abcd"), 0, op, io.BytesIO(), "vendor")


@pytest.mark.parametrize("op_type", [OP_SOURCE_COPY, OP_SOURCE_BSDIFF, 42])
def test_unsupported_operation_types_are_rejected(op_type: int) -> None:
    op = Operation(op_type, data_length=4, dst_extents=[Extent(0, 1)])

    with pytest.raises(PayloadFormatError, match=f"Unsupported operation type {op_type}"):
        _ = apply_operation(io.BytesIO(b"abcd"), 0, op, io.BytesIO(), "system")


def test_window_past_end_of_file_is_a_short_read() -> None:
    op = Operation(OP_REPLACE, data_offset=0, data_length=100, dst_extents=[Extent(0, 1)])

    with pytest.raises(PayloadIOError, match="Short read"):
        _ = _run(op, b"only-ten!!")


def test_corrupt_xz_data_is_a_codec_error() -> None:
    junk = b"this is not xz" * 10

    with pytest.raises(PayloadCodecError, match="xz decompression failed"):
        _ = _run(_op(OP_REPLACE_XZ, junk), junk)


def test_truncated_bz2_stream_is_a_codec_error() -> None:
    packed = bz2.compress(os.urandom(5000))[:-20]

    with pytest.raises(PayloadCodecError, match="end-of-stream"):
        _ = _run(_op(OP_REPLACE_BZ, packed), packed)


def test_data_hash_is_checked_when_present() -> None:
    data = b"payload-bytes" * 10
    good = _op(OP_REPLACE, data, data_sha256=hashlib.sha256(data).digest())
    bad = _op(OP_REPLACE, data, data_sha256=hashlib.sha256(b"other").digest())

    assert _run(good, data) == data
    with pytest.raises(PayloadFormatError, match="Data hash mismatch"):
        _ = _run(bad, data)
    assert _run(bad, data, verify=False) == data


def test_operations_are_concatenated_in_manifest_order() -> None:
    raw = b"R" * 4096
    packed = lzma.compress(b"X" * 8192)
    source = raw + packed
    part = PartitionUpdate(
        name="boot",
        operations=[
            Operation(OP_REPLACE_XZ, len(raw), len(packed), [Extent(2, 2)]),
            Operation(OP_ZERO, dst_extents=[Extent(1, 1)]),
            Operation(OP_REPLACE, 0, len(raw), [Extent(0, 1)]),
        ],
    )
    seen: list[tuple[int, int]] = []
    f_out = io.BytesIO()

    written = replay_operations(
        io.BytesIO(source), 0, part, f_out, progress=lambda done, total: seen.append((done, total))
    )

    assert f_out.getvalue() == b"X" * 8192 + bytes(4096) + raw
    assert written == 3 * 4096 + 4096
    assert seen == [(1, 3), (2, 3), (3, 3)]


def _partition(data: bytes) -> PartitionUpdate:
    return PartitionUpdate(name="boot", operations=[_op(OP_REPLACE, data)])


def test_extract_selected_writes_image_and_removes_temp_file(tmp_path: Path) -> None:
    data = os.urandom(2048)
    src = tmp_path / "payload.bin"
    _ = src.write_bytes(b"H" * 24 + data)
    out = tmp_path / "boot.img"

    with src.open("rb") as f_in:
        written = extract_selected(f_in, PayloadHeader(), _partition(data), out)

    assert written == 2048
    assert out.read_bytes() == data
    assert not (tmp_path / "boot.img.part").exists()


def test_failed_extraction_leaves_nothing_behind(tmp_path: Path) -> None:
    out = tmp_path / "boot.img"
    part = PartitionUpdate(
        name="boot",
        operations=[
            _op(OP_REPLACE, b"ok" * 10),
            Operation(OP_SOURCE_COPY, dst_extents=[Extent(0, 1)]),
        ],
    )

    with pytest.raises(PayloadFormatError):
        _ = extract_selected(io.BytesIO(b"H" * 24 + b"ok" * 10), PayloadHeader(), part, out)

    assert list(tmp_path.iterdir()) == []


def test_failed_extraction_keeps_previous_image(tmp_path: Path) -> None:
    out = tmp_path / "boot.img"
    _ = out.write_bytes(b"previous")
    part = PartitionUpdate(name="boot", operations=[Operation(OP_REPLACE, dst_extents=[])])

    with pytest.raises(PayloadFormatError):
        _ = extract_selected(io.BytesIO(b""), PayloadHeader(), part, out)

    assert out.read_bytes() == b"previous"


def test_output_that_cannot_be_created_is_an_io_error(tmp_path: Path) -> None:
    out = tmp_path / "missing-dir" / "boot.img"

    with pytest.raises(PayloadIOError, match="File create error"):
        _ = extract_selected(io.BytesIO(b""), PayloadHeader(), _partition(b""), out)


class NullSink(io.RawIOBase):
    """Counts and discards everything written"""

    def __init__(self) -> None:
        self.size = 0

    def writable(self) -> bool:
        return True

    def write(self, b) -> int:
        self.size += len(b)
        return len(b)


@pytest.mark.parametrize(
    ("op_type", "compress"),
    [(OP_REPLACE_XZ, lzma.compress), (OP_REPLACE_BZ, bz2.compress)],
    ids=["xz", "bz2"],
)
def test_concatenated_streams_in_one_window_are_all_decoded(op_type: int, compress) -> None:
    packed = compress(b"A" * 4096) + compress(b"B" * 4096)

    assert _run(_op(op_type, packed, blocks=2), packed) == b"A" * 4096 + b"B" * 4096


def test_xz_stream_padding_between_streams_is_skipped() -> None:
    packed = lzma.compress(b"first") + b"\x00" * 8 + lzma.compress(b"second") + b"\x00" * 4

    assert _run(_op(OP_REPLACE_XZ, packed), packed) == b"firstsecond"


@pytest.mark.parametrize(
    ("op_type", "compress"),
    [(OP_REPLACE_XZ, lzma.compress), (OP_REPLACE_BZ, bz2.compress)],
    ids=["xz", "bz2"],
)
def test_junk_after_a_stream_inside_the_window_is_a_codec_error(op_type: int, compress) -> None:
    packed = compress(b"data" * 100) + b"\xde\xad\xbe\xef" * 4

    with pytest.raises(PayloadCodecError, match="decompression failed"):
        _ = _run(_op(op_type, packed), packed)


def test_legacy_lzma_alone_data_is_not_accepted_as_xz() -> None:
    packed = lzma.compress(b"data" * 100, format=lzma.FORMAT_ALONE)

    with pytest.raises(PayloadCodecError, match="xz decompression failed"):
        _ = _run(_op(OP_REPLACE_XZ, packed), packed)


@pytest.mark.parametrize(
    ("op_type", "compress"),
    [(OP_REPLACE_XZ, lambda data: lzma.compress(data, preset=1)), (OP_REPLACE_BZ, bz2.compress)],
    ids=["xz", "bz2"],
)
def test_highly_compressed_window_is_decoded_with_bounded_memory(op_type: int, compress) -> None:
    size = 64 * 1024 * 1024
    packed = compress(bytes(size))
    op = _op(op_type, packed)
    sink = NullSink()

    tracemalloc.start()
    try:
        _ = apply_operation(io.BytesIO(packed), 0, op, sink, "system")
        peak = tracemalloc.get_traced_memory()[1]
    finally:
        tracemalloc.stop()

    assert sink.size == size
    assert peak < 16 * 1024 * 1024
