"""One open payload.bin and the operations callers run against it"""

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional

from .errors import PartitionNotFoundError, PayloadIOError
from .executor import ProgressCallback, extract_selected
from .header import PayloadHeader, read_header
from .manifest import Manifest, read_manifest


class SessionState(enum.Enum):
    UNOPENED = 'unopened'
    OPENED = 'opened'
    INITIALIZED = 'initialized'


@dataclass
class PartitionInfo:
    name: str
    size: int = 0


class PayloadSession:
    """
    Owns the file handle of one payload.bin.

    Header and manifest are parsed on first use and cached until close().
    Every call seeks and reads through the same handle, so calls against one
    session must not run concurrently; open one session per thread instead.
    """

    def __init__(self, path):
        self.path = Path(path)
        self.state = SessionState.UNOPENED
        self._file: Optional[BinaryIO] = None
        self._header: Optional[PayloadHeader] = None
        self._manifest: Optional[Manifest] = None

    def __enter__(self) -> 'PayloadSession':
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"PayloadSession({str(self.path)!r}, state={self.state.value})"

    def open(self) -> None:
        if self.state is not SessionState.UNOPENED:
            return
        try:
            self._file = open(self.path, 'rb')
        except OSError as e:
            raise PayloadIOError(f"Cannot open {self.path}: {e}") from e
        self.state = SessionState.OPENED

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
        self._file = None
        self._header = None
        self._manifest = None
        self.state = SessionState.UNOPENED

    def _ensure_initialized(self) -> None:
        if self.state is SessionState.INITIALIZED:
            return
        self.open()
        try:
            self._file.seek(0)
        except OSError as e:
            raise PayloadIOError(f"Cannot rewind {self.path}: {e}") from e
        header = read_header(self._file)
        manifest = read_manifest(self._file, header.manifest_len)
        self._header, self._manifest = header, manifest
        self.state = SessionState.INITIALIZED

    @property
    def header(self) -> PayloadHeader:
        self._ensure_initialized()
        return self._header

    @property
    def manifest(self) -> Manifest:
        self._ensure_initialized()
        return self._manifest

    def partition_names(self) -> list[str]:
        return [p.name for p in self.manifest.partitions]

    def list_partitions(self) -> list[PartitionInfo]:
        """Name and declared size of every partition, in manifest order"""
        return [PartitionInfo(p.name, p.size or 0) for p in self.manifest.partitions]

    def extract(self, name: str, output_path, verify: bool = True,
                progress: Optional[ProgressCallback] = None) -> int:
        """
        Extract partition `name` to output_path.

        Every partition carrying that exact name is written in turn, so with
        duplicate names the last one ends up at output_path. Returns the
        number of matches.
        """
        self._ensure_initialized()
        matches = 0
        for partition in self._manifest.partitions:
            if partition.name != name:
                continue
            matches += 1
            extract_selected(self._file, self._header, partition, output_path,
                             verify, progress)
        if not matches:
            raise PartitionNotFoundError(name, self.path)
        return matches
