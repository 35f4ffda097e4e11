"""
DeltaArchiveManifest decoding

Walks the protobuf wire format of update_metadata.proto directly and keeps
only the fields needed to list and rebuild full-payload partitions.
"""

import struct
from dataclasses import dataclass, field
from typing import BinaryIO, Iterator, Optional, Union

from .errors import PayloadFormatError, PayloadIOError

BLOCK_SIZE = 4096
MANIFEST_READ_CHUNK = 1024 * 1024

OP_REPLACE = 0
OP_REPLACE_BZ = 1
OP_MOVE = 2
OP_BSDIFF = 3
OP_SOURCE_COPY = 4
OP_SOURCE_BSDIFF = 5
OP_ZERO = 6
OP_DISCARD = 7
OP_REPLACE_XZ = 8
OP_PUFFDIFF = 9
OP_BROTLI_BSDIFF = 10
OP_ZUCCHINI = 11
OP_LZ4DIFF_BSDIFF = 12
OP_LZ4DIFF_PUFFDIFF = 13

OP_NAMES = {
    0: 'REPLACE', 1: 'REPLACE_BZ', 2: 'MOVE', 3: 'BSDIFF', 4: 'SOURCE_COPY',
    5: 'SOURCE_BSDIFF', 6: 'ZERO', 7: 'DISCARD', 8: 'REPLACE_XZ', 9: 'PUFFDIFF',
    10: 'BROTLI_BSDIFF', 11: 'ZUCCHINI', 12: 'LZ4DIFF_BSDIFF', 13: 'LZ4DIFF_PUFFDIFF',
}

WIRE_VARINT = 0
WIRE_FIXED64 = 1
WIRE_LEN = 2
WIRE_FIXED32 = 5

FieldValue = Union[int, bytes]


def op_name(op_type: int) -> str:
    return OP_NAMES.get(op_type, f'UNKNOWN({op_type})')


@dataclass
class Extent:
    start_block: int = 0
    num_blocks: int = 0


@dataclass
class Operation:
    op_type: int = OP_REPLACE
    data_offset: int = 0
    data_length: int = 0
    dst_extents: list[Extent] = field(default_factory=list)
    data_sha256: bytes = b''

    @property
    def name(self) -> str:
        return op_name(self.op_type)


@dataclass
class PartitionUpdate:
    name: str = ''
    size: Optional[int] = None
    operations: list[Operation] = field(default_factory=list)
    hash: bytes = b''


@dataclass
class Manifest:
    block_size: int = BLOCK_SIZE
    minor_version: int = 0
    partitions: list[PartitionUpdate] = field(default_factory=list)

    @property
    def is_delta(self) -> bool:
        return self.minor_version != 0


def read_varint(data: bytes, pos: int) -> tuple[int, int]:
    """Read varint, return (value, new_position)"""
    result = 0
    shift = 0
    while pos < len(data):
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if byte < 0x80:
            return result, pos
        shift += 7
        if shift >= 70:
            raise PayloadFormatError("manifest decode failure: varint too long")
    raise PayloadFormatError("manifest decode failure: truncated varint")


def _take(data: bytes, pos: int, size: int) -> tuple[bytes, int]:
    end = pos + size
    if end > len(data):
        raise PayloadFormatError(
            f"manifest decode failure: field needs {size} bytes at {pos}, {len(data) - pos} left")
    return data[pos:end], end


def iter_fields(data: bytes) -> Iterator[tuple[int, int, FieldValue]]:
    """Iterate protobuf fields, yielding (field_number, wire_type, value)"""
    pos = 0
    while pos < len(data):
        tag, pos = read_varint(data, pos)
        field_num = tag >> 3
        wire_type = tag & 7
        if field_num == 0:
            raise PayloadFormatError("manifest decode failure: field number 0")

        if wire_type == WIRE_VARINT:
            value, pos = read_varint(data, pos)
        elif wire_type == WIRE_LEN:
            length, pos = read_varint(data, pos)
            value, pos = _take(data, pos, length)
        elif wire_type == WIRE_FIXED64:
            raw, pos = _take(data, pos, 8)
            value = struct.unpack('<Q', raw)[0]
        elif wire_type == WIRE_FIXED32:
            raw, pos = _take(data, pos, 4)
            value = struct.unpack('<I', raw)[0]
        else:
            raise PayloadFormatError(f"manifest decode failure: unsupported wire type {wire_type}")

        yield field_num, wire_type, value


def _int(field_num: int, wire_type: int, value: FieldValue, message: str) -> int:
    if wire_type not in (WIRE_VARINT, WIRE_FIXED64, WIRE_FIXED32):
        raise PayloadFormatError(
            f"manifest decode failure: {message}.{field_num} should be an integer")
    return value


def _bytes(field_num: int, wire_type: int, value: FieldValue, message: str) -> bytes:
    if wire_type != WIRE_LEN:
        raise PayloadFormatError(
            f"manifest decode failure: {message}.{field_num} should be length-delimited")
    return value


def parse_extent(data: bytes) -> Extent:
    """Parse Extent message"""
    ext = Extent()
    for f, wt, v in iter_fields(data):
        if f == 1:
            ext.start_block = _int(f, wt, v, 'Extent')
        elif f == 2:
            ext.num_blocks = _int(f, wt, v, 'Extent')
    return ext


def parse_operation(data: bytes) -> Operation:
    """Parse InstallOperation message"""
    op = Operation()
    for f, wt, v in iter_fields(data):
        if f == 1:
            op.op_type = _int(f, wt, v, 'InstallOperation')
        elif f == 2:
            op.data_offset = _int(f, wt, v, 'InstallOperation')
        elif f == 3:
            op.data_length = _int(f, wt, v, 'InstallOperation')
        elif f == 6:  # dst_extents
            op.dst_extents.append(parse_extent(_bytes(f, wt, v, 'InstallOperation')))
        elif f == 8:
            op.data_sha256 = _bytes(f, wt, v, 'InstallOperation')
    return op


def parse_partition(data: bytes) -> PartitionUpdate:
    """Parse PartitionUpdate message"""
    part = PartitionUpdate()
    for f, wt, v in iter_fields(data):
        if f == 1:
            raw = _bytes(f, wt, v, 'PartitionUpdate')
            try:
                part.name = raw.decode('utf-8')
            except UnicodeDecodeError as e:
                raise PayloadFormatError(f"manifest decode failure: partition name {raw!r}") from e
        elif f == 7:  # new_partition_info
            for pf, pwt, pv in iter_fields(_bytes(f, wt, v, 'PartitionUpdate')):
                if pf == 1:
                    part.size = _int(pf, pwt, pv, 'PartitionInfo')
                elif pf == 2:
                    part.hash = _bytes(pf, pwt, pv, 'PartitionInfo')
        elif f == 8:  # operations
            part.operations.append(parse_operation(_bytes(f, wt, v, 'PartitionUpdate')))
    return part


def decode_manifest(data: bytes) -> Manifest:
    """Decode serialized DeltaArchiveManifest bytes"""
    manifest = Manifest()
    for f, wt, v in iter_fields(data):
        if f == 3:
            manifest.block_size = _int(f, wt, v, 'DeltaArchiveManifest')
        elif f == 12:
            manifest.minor_version = _int(f, wt, v, 'DeltaArchiveManifest')
        elif f == 13:
            manifest.partitions.append(parse_partition(_bytes(f, wt, v, 'DeltaArchiveManifest')))
    return manifest


def read_manifest(f: BinaryIO, manifest_len: int) -> Manifest:
    """Read manifest_len bytes at the current position and decode them"""
    # manifest_len comes from the file, so never allocate it up front
    chunks = []
    remaining = manifest_len
    try:
        while remaining:
            chunk = f.read(min(remaining, MANIFEST_READ_CHUNK))
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
    except OSError as e:
        raise PayloadIOError(f"Failed to read manifest: {e}") from e
    data = b''.join(chunks)
    if len(data) != manifest_len:
        raise PayloadFormatError(
            f"manifest decode failure: expected {manifest_len} bytes, got {len(data)}")
    return decode_manifest(data)
