"""Binary storage for original evidence files."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path

from .errors import FileUnavailableError


class DocumentStorage(ABC):
    """Abstract base class for evidence byte storage."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the stored bytes. Raises FileUnavailableError if absent."""
        ...

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        ...

    @abstractmethod
    def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...


class LocalFileStorage(DocumentStorage):
    """Files under a root directory, addressed by relative key."""

    def __init__(self, root: Path | str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root):
            raise FileUnavailableError(f"Storage key escapes storage root: {key}")
        return path

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except OSError as e:
            raise FileUnavailableError(f"Cannot read stored file {key}: {e}", original_error=e) from e

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)
