"""Exceptions raised while reading payload.bin files"""


class PayloadError(Exception):
    """Base class for every payload failure"""


class PayloadFormatError(PayloadError, ValueError):
    """The payload bytes do not describe something we can extract"""


class PayloadIOError(PayloadError, OSError):
    """Opening, reading, seeking or writing failed"""


class PayloadCodecError(PayloadError):
    """An xz or bzip2 stream could not be decompressed"""


class PartitionNotFoundError(PayloadError, LookupError):
    """No partition in the manifest has the requested name"""

    def __init__(self, name: str, path):
        super().__init__(f"partition '{name}' not found in {path}")
        self.name = name
        self.path = path
