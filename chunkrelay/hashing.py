"""File identifiers and MD5 digests of files, chunks and raw data."""

from __future__ import annotations

import hashlib
import os
import time

_READ_BLOCK = 4 * 1024 * 1024


def generate_file_id(file_name: str, file_size: int) -> str:
    """Return a unique hex identifier built from name, size and the current time."""
    digest = hashlib.md5()
    digest.update(file_name.encode("utf-8"))
    digest.update(str(file_size).encode("ascii"))
    digest.update(str(time.time_ns()).encode("ascii"))
    return digest.hexdigest()


def data_md5(data: bytes) -> str:
    """Return the hex MD5 digest of ``data``."""
    return hashlib.md5(data).hexdigest()


def file_md5(path: str | os.PathLike[str]) -> str:
    """Return the hex MD5 digest of a file, read in large blocks."""
    digest = hashlib.md5()
    with open(path, "rb") as handle:
        for block in iter(lambda: handle.read(_READ_BLOCK), b""):
            digest.update(block)
    return digest.hexdigest()


def chunk_md5(path: str | os.PathLike[str]) -> str:
    """Return the hex MD5 digest of a chunk file read whole into memory."""
    with open(path, "rb") as handle:
        return data_md5(handle.read())


def file_sha256(path: str | os.PathLike[str]) -> str:
    """Compatibility name; returns the same MD5 digest as :func:`file_md5`."""
    return file_md5(path)


def data_sha256(data: bytes) -> str:
    """Compatibility name; returns the same MD5 digest as :func:`data_md5`."""
    return data_md5(data)


def chunk_sha256(path: str | os.PathLike[str]) -> str:
    """Compatibility name; returns the same MD5 digest as :func:`chunk_md5`."""
    return chunk_md5(path)