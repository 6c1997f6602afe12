"""
File management operations
Handles directory cataloging, checksums, and storage of pushed files
"""

import os
import zlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from .codec_handler import CodecHandler
from .exceptions import DirectoryAccessError, FileError, FilenameCollisionError

logger = logging.getLogger(__name__)

CHECKSUM_CHUNK_SIZE = 64 * 1024
MAX_FILENAME_LENGTH = 255
MAX_DISAMBIGUATION = 9  # Only a single digit is ever rewritten: "(1)" .. "(9)"


def calculate_checksum(path) -> str:
    """
    Calculates the CRC32 of a file's full contents.

    Args:
        path: Path of the file to fingerprint.

    Returns:
        The CRC32 as lowercase hex without zero padding (e.g. '3610a686').

    Raises:
        OSError: If the file cannot be read.
    """
    crc = 0
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHECKSUM_CHUNK_SIZE), b''):
            crc = zlib.crc32(chunk, crc)
    return format(crc & 0xffffffff, 'x')


def resolve_filename(candidate: str, existing: Iterable[str]) -> str:
    """
    Picks a name for an incoming file that does not overwrite an existing one.

    A taken name gets " (1)" inserted before its first '.', or appended when
    it has none. The digit is then bumped until the name is free.

    Raises:
        FilenameCollisionError: If "(1)" through "(9)" are all taken.
    """
    existing = set(existing)
    if candidate not in existing:
        return candidate

    period_pos = candidate.find('.')
    if period_pos == -1:
        stem, suffix = candidate, ''
    else:
        stem, suffix = candidate[:period_pos], candidate[period_pos:]

    for counter in range(1, MAX_DISAMBIGUATION + 1):
        resolved = f"{stem} ({counter}){suffix}"
        if resolved not in existing:
            return resolved

    raise FilenameCollisionError(
        f"No free name left for '{candidate}': '{stem} (1){suffix}' through "
        f"'{stem} ({MAX_DISAMBIGUATION}){suffix}' are all taken.")


def is_valid_filename(filename: str) -> bool:
    """Checks that a client-supplied name is a single flat path component."""
    if not filename or len(filename) > MAX_FILENAME_LENGTH:
        return False
    if filename in ('.', '..') or '\x00' in filename:
        return False
    if '/' in filename or '\\' in filename:
        return False
    try:
        os.fsencode(filename)  # Lone surrogates have no on-disk encoding
    except UnicodeEncodeError:
        return False
    return True


@dataclass(frozen=True)
class FileEntity:
    """A cataloged file; the checksum is computed once, when the entity is built."""
    path: str
    filename: str
    checksum: str

    @classmethod
    def from_path(cls, path) -> "FileEntity":
        path = str(path)
        return cls(path=path, filename=os.path.basename(path), checksum=calculate_checksum(path))

    def matches(self, filename: str, checksum: str) -> bool:
        return self.filename == filename and self.checksum == checksum

    def to_wire(self, data: Optional[str] = None) -> Dict[str, str]:
        """Wire form of the entity; 'data' is included only when given"""
        item = {"filename": self.filename, "checksum": self.checksum}
        if data is not None:
            item["data"] = data
        return item


def find_match(catalog: Iterable[FileEntity], filename: str, checksum: str) -> Optional[FileEntity]:
    """Returns the first entity whose filename and checksum both match"""
    for entity in catalog:
        if entity.matches(filename, checksum):
            return entity
    return None


class FileManager:
    """Manages the served directory"""

    def __init__(self, directory: str = "."):
        self.directory = Path(directory)
        self.codec = CodecHandler()

    def _listing(self) -> List[os.DirEntry]:
        """Raw directory listing; failing to open the directory is fatal"""
        try:
            with os.scandir(self.directory) as entries:
                return list(entries)
        except OSError as e:
            raise DirectoryAccessError(f"Couldn't open directory '{self.directory}': {e}") from e

    def scan(self) -> List[FileEntity]:
        """
        Builds a fresh catalog of the regular files directly inside the directory.

        Subdirectories are skipped. Files that disappear or cannot be read while
        their checksum is computed are logged and left out.

        Returns:
            FileEntity objects sorted by filename.

        Raises:
            DirectoryAccessError: If the directory itself cannot be opened.
        """
        catalog = []
        for entry in sorted(self._listing(), key=lambda e: e.name):
            try:
                if not entry.is_file():
                    continue
                catalog.append(FileEntity.from_path(entry.path))
            except OSError as e:
                logger.warning(f"Skipping unreadable file '{entry.path}': {e}")
        return catalog

    def existing_filenames(self) -> Set[str]:
        """Names currently present in the directory, files and subdirectories alike"""
        return {entry.name for entry in self._listing()}

    def read_base64(self, entity: FileEntity) -> str:
        """Read a cataloged file and return its contents as base64"""
        try:
            with open(entity.path, 'rb') as f:
                data = f.read()
        except OSError as e:
            raise FileError(f"Failed to read '{entity.filename}': {e}") from e
        return self.codec.b64_encode(data)

    def write_base64(self, filename: str, data: str) -> FileEntity:
        """
        Decodes base64 file content and writes it into the directory.

        Args:
            filename: Final name of the file (already disambiguated).
            data: Base64 encoded file content.

        Returns:
            A FileEntity whose checksum reflects the bytes actually written.

        Raises:
            FileError: If the file cannot be written or read back.
        """
        file_path = self.directory / filename
        try:
            with open(file_path, 'wb') as f:
                f.write(self.codec.b64_decode(data))
            return FileEntity.from_path(file_path)
        except OSError as e:
            raise FileError(f"Failed to store '{filename}': {e}") from e

    def remove(self, entity: FileEntity) -> bool:
        """Delete a file from the directory"""
        try:
            os.remove(entity.path)
            return True
        except OSError as e:
            logger.error(f"Error deleting file '{entity.path}': {e}")
            return False
