"""In-memory records of chunked uploads and downloads."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable


def count_completed_chunks(completed: Iterable[bool]) -> int:
    """Return how many chunks are marked as done."""
    return sum(1 for done in completed if done)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UploadInfo:
    """State of one chunked upload."""

    file_id: str
    file_name: str
    total_chunks: int
    total_size: int
    chunk_size: int
    completed: list[bool] = field(default_factory=list)
    file_hash: str = ""
    chunk_hashes: dict[int, str] = field(default_factory=dict)
    lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if not self.completed:
            self.completed = [False] * self.total_chunks

    def completed_count(self) -> int:
        """Return the number of chunks received so far."""
        with self.lock:
            return count_completed_chunks(self.completed)


class UploadRegistry:
    """Thread-safe map from file id to upload state."""

    def __init__(self) -> None:
        self._items: dict[str, UploadInfo] = {}
        self._lock = threading.Lock()

    def get(self, file_id: str) -> UploadInfo | None:
        """Return the upload with ``file_id``, or None."""
        with self._lock:
            return self._items.get(file_id)

    def save(self, info: UploadInfo) -> None:
        """Store ``info`` under its file id, replacing any earlier entry."""
        with self._lock:
            self._items[info.file_id] = info

    def remove(self, file_id: str) -> None:
        """Forget the upload with ``file_id``; unknown ids are ignored."""
        with self._lock:
            self._items.pop(file_id, None)

    def __contains__(self, file_id: object) -> bool:
        with self._lock:
            return file_id in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


@dataclass
class DownloadInfo:
    """State of one chunked download."""

    file_id: str
    file_name: str
    file_path: str
    total_size: int
    chunk_size: int
    total_chunks: int
    created_at: datetime = field(default_factory=_utcnow)
    file_hash: str = ""
    chunk_hashes: dict[int, str] = field(default_factory=dict)
    lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def hash_count(self) -> int:
        """Return how many chunk hashes have been computed."""
        with self.lock:
            return len(self.chunk_hashes)


class DownloadRegistry:
    """Thread-safe map from file id to download state."""

    def __init__(self) -> None:
        self._items: dict[str, DownloadInfo] = {}
        self._lock = threading.Lock()

    def get(self, file_id: str) -> DownloadInfo | None:
        """Return the download with ``file_id``, or None."""
        with self._lock:
            return self._items.get(file_id)

    def save(self, info: DownloadInfo) -> None:
        """Store ``info`` under its file id, replacing any earlier entry."""
        with self._lock:
            self._items[info.file_id] = info

    def remove(self, file_id: str) -> None:
        """Forget the download with ``file_id``; unknown ids are ignored."""
        with self._lock:
            self._items.pop(file_id, None)

    def cleanup_expired(self, max_age: timedelta | float) -> list[str]:
        """Drop downloads older than ``max_age`` and return their ids.

        ``max_age`` may be a timedelta or a number of seconds.
        """
        if not isinstance(max_age, timedelta):
            max_age = timedelta(seconds=max_age)
        now = _utcnow()
        with self._lock:
            expired = [
                file_id
                for file_id, info in self._items.items()
                if now - info.created_at > max_age
            ]
            for file_id in expired:
                del self._items[file_id]
        return expired

    def __contains__(self, file_id: object) -> bool:
        with self._lock:
            return file_id in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)