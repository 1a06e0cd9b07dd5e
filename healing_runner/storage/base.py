from __future__ import annotations

from typing import Protocol


class StorageBackend(Protocol):
    def save_bytes(self, key: str, data: bytes) -> str:
        """Persist ``data`` under ``key`` and return the path or URL it landed at."""

    def get_bytes(self, key: str) -> bytes:
        ...
