"""
Hashing and random-token helpers.

File digests are what the printer checks a download against, so the
hash must be computed over the exact bytes the file server will send.
"""

import logging
import os

from cryptography.hazmat.primitives import hashes

from config import CHUNK_SIZE

logger = logging.getLogger(__name__)


def file_md5(path: str) -> tuple[str, int]:
    """
    Compute the MD5 digest of a file by streaming it in chunks.

    Blocking; call through ``asyncio.to_thread`` from the event loop.

    Returns:
        (md5_hex, size_bytes)

    Raises:
        OSError: the file could not be opened or read.
    """
    digest = hashes.Hash(hashes.MD5())
    size = 0
    with open(path, "rb") as f:
        while True:
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            digest.update(chunk)
            size += len(chunk)
    return digest.finalize().hex(), size


def random_hex(length: int) -> str:
    """Return ``length`` random lowercase hex characters."""
    return os.urandom((length + 1) // 2).hex()[:length]
