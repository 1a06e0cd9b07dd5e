from __future__ import annotations

import logging
from pathlib import Path

from ..config import settings


class LocalStorage:
    """Stores run artifacts on disk below the results directory."""

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root or settings.results_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents and path != self.root.resolve():
            raise ValueError(f"storage key escapes results directory: {key}")
        return path

    def save_bytes(self, key: str, data: bytes) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logging.debug("artifact_saved key=%s size=%s", key, len(data))
        return str(path)

    def get_bytes(self, key: str) -> bytes:
        return self._path(key).read_bytes()


def get_storage() -> LocalStorage:
    return LocalStorage()
