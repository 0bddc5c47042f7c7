"""Runtime configuration for the relay server."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

DEFAULT_UPLOADS_DIR = Path("./uploads")
TEMP_DIR_NAME = "temp"
DEFAULT_PORT = 8080


@dataclass
class RelayConfig:
    """Where uploaded files live and where the server listens.

    ``temp_dir`` defaults to a ``temp`` directory inside ``uploads_dir``.
    """

    uploads_dir: Path = DEFAULT_UPLOADS_DIR
    temp_dir: Path | None = None
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT

    def __post_init__(self) -> None:
        self.uploads_dir = Path(self.uploads_dir)
        if self.temp_dir is None:
            self.temp_dir = self.uploads_dir / TEMP_DIR_NAME
        else:
            self.temp_dir = Path(self.temp_dir)

    @property
    def chunk_dir(self) -> Path:
        """The directory that holds partial upload chunks."""
        assert self.temp_dir is not None
        return self.temp_dir

    def ensure_dirs(self) -> None:
        """Create the upload and temporary directories if they are missing."""
        self.uploads_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
        self.chunk_dir.mkdir(mode=0o755, parents=True, exist_ok=True)