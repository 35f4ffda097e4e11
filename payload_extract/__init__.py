"""Partition image extraction from Android OTA payload.bin files"""

from .errors import (
    PartitionNotFoundError, PayloadCodecError, PayloadError, PayloadFormatError, PayloadIOError,
)
from .header import PayloadHeader, read_header
from .manifest import Extent, Manifest, Operation, PartitionUpdate, read_manifest
from .executor import extract_selected
from .session import PartitionInfo, PayloadSession, SessionState

__version__ = '0.1.0'
