"""Fixed-size payload.bin header"""

import struct
from dataclasses import dataclass
from typing import BinaryIO

from .errors import PayloadFormatError, PayloadIOError

PAYLOAD_MAGIC = b'CrAU'
BRILLO_MAJOR_PAYLOAD_VERSION = 2
HEADER_SIZE = 24

# magic, version, manifest_len, signature_len
_HEADER = struct.Struct('>4sQQI')


@dataclass
class PayloadHeader:
    magic: bytes = PAYLOAD_MAGIC
    version: int = BRILLO_MAJOR_PAYLOAD_VERSION
    manifest_len: int = 0
    signature_len: int = 0

    @property
    def header_size(self) -> int:
        return HEADER_SIZE

    @property
    def metadata_size(self) -> int:
        return self.header_size + self.manifest_len

    @property
    def data_offset(self) -> int:
        """Absolute offset of the data region"""
        return self.signature_len + self.metadata_size


def read_header(f: BinaryIO) -> PayloadHeader:
    """Read the 24-byte header at the current position"""
    try:
        raw = f.read(HEADER_SIZE)
    except OSError as e:
        raise PayloadIOError(f"Failed to read header: {e}") from e

    # check the magic first so a short non-payload file is reported as such
    magic = raw[:4]
    if magic != PAYLOAD_MAGIC:
        raise PayloadFormatError(f"Invalid magic: {magic!r}")
    if len(raw) < HEADER_SIZE:
        raise PayloadFormatError(f"Truncated header: expected {HEADER_SIZE} bytes, got {len(raw)}")

    magic, version, manifest_len, signature_len = _HEADER.unpack(raw)
    if version != BRILLO_MAJOR_PAYLOAD_VERSION:
        raise PayloadFormatError(f"Unsupported version: {version}")

    return PayloadHeader(magic=magic, version=version,
                         manifest_len=manifest_len, signature_len=signature_len)
