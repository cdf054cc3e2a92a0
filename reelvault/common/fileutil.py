"""Cross-platform file I/O utilities and content fingerprinting.

Provides ``pread`` that works on all platforms including Windows where
``os.pread`` is not available, plus the helpers that derive object keys and
content fingerprints from local files.
"""

import hashlib
import os
import re
import sys
from pathlib import Path
from typing import Union

from reelvault.common.constants import FINGERPRINT_CHUNK_SIZE, MAX_SAFE_NAME_LENGTH

if sys.platform == "win32":

    def pread(fd: int, length: int, offset: int) -> bytes:
        """Positional read, emulated on Windows via seek + read."""
        os.lseek(fd, offset, os.SEEK_SET)
        return os.read(fd, length)

else:
    pread = os.pread


_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_name(name: str) -> str:
    """Replace unsafe characters and keep the tail of long names."""
    return _UNSAFE_CHARS.sub("_", name)[-MAX_SAFE_NAME_LENGTH:]


def file_extension(name: str) -> str:
    """Lower-cased extension without the dot ('' when there is none)."""
    parts = name.split(".")
    return parts[-1].lower() if len(parts) > 1 else ""


def fingerprint_bytes(leading: bytes, size: int) -> str:
    """Fingerprint from an already-read leading chunk and the declared size."""
    h = hashlib.sha256()
    h.update(leading)
    h.update(str(size).encode())
    return h.hexdigest()


def compute_fingerprint(path: Union[str, Path], chunk_size: int = FINGERPRINT_CHUNK_SIZE) -> str:
    """Compute the content fingerprint of a local file.

    SHA-256 over the first ``chunk_size`` bytes followed by the decimal
    file size. Cheap for large videos and good enough for deduplication;
    uniqueness is enforced by the server's create-if-absent commit.
    """
    size = os.path.getsize(path)
    fd = os.open(str(path), os.O_RDONLY | getattr(os, "O_BINARY", 0))
    try:
        leading = pread(fd, min(chunk_size, size), 0)
    finally:
        os.close(fd)
    return fingerprint_bytes(leading, size)
