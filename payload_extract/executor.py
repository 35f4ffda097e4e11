"""
Operation replay

Rebuilds a partition image by applying its install operations in manifest
order. The output is written strictly sequentially: each operation's bytes
are appended after the previous one's and only the first destination extent
is consulted (ZERO sizing). Payloads whose operations scatter data over
several extents are not laid out by block address.
"""

import bz2
import functools
import hashlib
import lzma
import os
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Optional

from .errors import PayloadCodecError, PayloadFormatError, PayloadIOError
from .header import PayloadHeader
from .manifest import (
    BLOCK_SIZE, OP_REPLACE, OP_REPLACE_BZ, OP_REPLACE_XZ, OP_ZERO,
    Operation, PartitionUpdate,
)

COPY_CHUNK_SIZE = 1024 * 1024
_ZERO_CHUNK = bytes(COPY_CHUNK_SIZE)

ProgressCallback = Callable[[int, int], None]

_DECOMPRESSORS = {
    OP_REPLACE_XZ: ('xz', functools.partial(lzma.LZMADecompressor, format=lzma.FORMAT_XZ)),
    OP_REPLACE_BZ: ('bzip2', bz2.BZ2Decompressor),
}


def _iter_window(f: BinaryIO, length: int, digest=None) -> Iterator[bytes]:
    """Yield exactly `length` bytes from the current position, in chunks"""
    remaining = length
    while remaining:
        try:
            chunk = f.read(min(remaining, COPY_CHUNK_SIZE))
        except OSError as e:
            raise PayloadIOError(f"Read failed: {e}") from e
        if not chunk:
            raise PayloadIOError(f"Short read: {remaining} of {length} bytes missing")
        remaining -= len(chunk)
        if digest is not None:
            digest.update(chunk)
        yield chunk


def _write(f_out: BinaryIO, data: bytes) -> int:
    try:
        n = f_out.write(data)
    except OSError as e:
        raise PayloadIOError(f"Write failed: {e}") from e
    # raw streams may report a partial write; None means nothing was taken
    return 0 if n is None else n


def _write_all(f_out: BinaryIO, data: bytes) -> int:
    n = _write(f_out, data)
    if n != len(data):
        raise PayloadIOError(f"Short write: {n} of {len(data)} bytes accepted")
    return n


def _feed(d, data: bytes, codec: str) -> bytes:
    try:
        return d.decompress(data, max_length=COPY_CHUNK_SIZE)
    except (lzma.LZMAError, OSError, EOFError) as e:
        raise PayloadCodecError(f"{codec} decompression failed: {e}") from e


def _decompress(chunks: Iterator[bytes], codec: str, factory) -> Iterator[bytes]:
    """
    Decode every compressed stream in `chunks`, one after the other.

    Output comes out in pieces of at most COPY_CHUNK_SIZE bytes, whatever
    the compression ratio.
    """
    d = None
    for chunk in chunks:
        data = chunk
        while data or (d is not None and not d.eof and not d.needs_input):
            if d is None or d.eof:
                if d is not None:
                    # xz allows null stream padding between streams
                    data = data.lstrip(b'\0')
                    if not data:
                        break
                d = factory()
            out = _feed(d, data, codec)
            data = d.unused_data if d.eof else b''
            if out:
                yield out
    if d is None or not d.eof:
        raise PayloadCodecError(f"{codec} stream ended before the end-of-stream marker")


def _zero_fill(f_out: BinaryIO, size: int, partition: str) -> int:
    written = 0
    while written < size:
        want = min(size - written, COPY_CHUNK_SIZE)
        n = _write(f_out, _ZERO_CHUNK[:want])
        written += n
        if n < want:
            break
    if written != size:
        raise PayloadFormatError(
            f"Zero-fill mismatch for partition {partition}: wrote {written} of {size} bytes")
    return written


def apply_operation(f_in: BinaryIO, data_offset: int, op: Operation, f_out: BinaryIO,
                    partition: str, verify: bool = True) -> int:
    """Apply one operation, return the number of bytes appended to f_out"""
    if not op.dst_extents:
        raise PayloadFormatError(f"Invalid destination extents for partition: {partition}")

    offset = op.data_offset + data_offset
    expected_size = op.dst_extents[0].num_blocks * BLOCK_SIZE

    try:
        f_in.seek(offset)
    except (OSError, ValueError, OverflowError) as e:
        raise PayloadIOError(f"Seek to {offset} failed: {e}") from e

    if op.op_type == OP_ZERO:
        return _zero_fill(f_out, expected_size, partition)

    if op.op_type != OP_REPLACE and op.op_type not in _DECOMPRESSORS:
        raise PayloadFormatError(
            f"Unsupported operation type {op.op_type} ({op.name}) in partition {partition}")

    digest = hashlib.sha256() if verify and op.data_sha256 else None
    chunks = _iter_window(f_in, op.data_length, digest)
    if op.op_type != OP_REPLACE:
        codec, factory = _DECOMPRESSORS[op.op_type]
        chunks = _decompress(chunks, codec, factory)

    written = 0
    for chunk in chunks:
        written += _write_all(f_out, chunk)

    if digest is not None and digest.digest() != op.data_sha256:
        raise PayloadFormatError(
            f"Data hash mismatch in partition {partition} at offset {op.data_offset}")
    return written


def replay_operations(f_in: BinaryIO, data_offset: int, partition: PartitionUpdate,
                      f_out: BinaryIO, verify: bool = True,
                      progress: Optional[ProgressCallback] = None) -> int:
    """Apply every operation of `partition` in order, return bytes written"""
    total = len(partition.operations)
    written = 0
    for i, op in enumerate(partition.operations):
        written += apply_operation(f_in, data_offset, op, f_out, partition.name, verify)
        if progress is not None:
            progress(i + 1, total)
    return written


def extract_selected(f_in: BinaryIO, header: PayloadHeader, partition: PartitionUpdate,
                     output_path, verify: bool = True,
                     progress: Optional[ProgressCallback] = None) -> int:
    """
    Extract one partition image to output_path.

    The image is assembled in `<output_path>.part` and renamed over
    output_path once every operation succeeded, so a failed extraction never
    leaves a truncated image behind.
    """
    output_path = Path(output_path)
    part_path = output_path.with_name(output_path.name + '.part')

    try:
        f_out = open(part_path, 'wb')
    except OSError as e:
        raise PayloadIOError(f"File create error: {output_path}: {e}") from e

    try:
        with f_out:
            written = replay_operations(f_in, header.data_offset, partition, f_out,
                                        verify, progress)
            try:
                f_out.flush()
            except OSError as e:
                raise PayloadIOError(f"Write failed: {output_path}: {e}") from e
        try:
            os.replace(part_path, output_path)
        except OSError as e:
            raise PayloadIOError(f"Failed to move image into place: {output_path}: {e}") from e
    except BaseException:
        part_path.unlink(missing_ok=True)
        raise

    return written
