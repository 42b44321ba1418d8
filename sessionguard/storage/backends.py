from __future__ import annotations

import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

from sessionguard.config import Settings, StorageBackend
from sessionguard.logging import get_logger
from sessionguard.storage.errors import StorageUnavailable

logger = get_logger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class DurableStorage(Protocol):
    """String key/value storage that survives process reloads."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


def _check_key(key: str) -> str:
    if not key or not _KEY_PATTERN.match(key):
        raise ValueError(f"invalid storage key: {key!r}")
    return key


class MemoryBackend:
    """Process-local storage used by tests and ephemeral runtimes."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(_check_key(key))

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[_check_key(key)] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(_check_key(key), None)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)


class FileBackend:
    """One file per key under a private state directory.

    Writes go to a temp file that is renamed into place, so a crash never
    leaves a half-written credential blob behind.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._lock = threading.Lock()
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership
            pass
        except OSError as exc:
            raise StorageUnavailable(
                "state directory unavailable", detail={"path": str(self.root)}
            ) from exc

    def _path(self, key: str) -> Path:
        return self.root / f"{_check_key(key)}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageUnavailable("read failed", detail={"key": key}) from exc

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        with self._lock:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.root), prefix=f".{key}_", suffix=".tmp"
            )
            try:
                try:
                    os.write(fd, value.encode("utf-8"))
                    os.fchmod(fd, 0o600)
                finally:
                    os.close(fd)
                os.replace(tmp_path, path)
            except OSError as exc:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise StorageUnavailable("write failed", detail={"key": key}) from exc

    def delete(self, key: str) -> None:
        path = self._path(key)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return
            except OSError as exc:
                raise StorageUnavailable("delete failed", detail={"key": key}) from exc


def build_backend(settings: Settings) -> DurableStorage:
    if settings.storage_backend == StorageBackend.MEMORY:
        logger.info("storage_backend_selected", backend="memory")
        return MemoryBackend()
    logger.info("storage_backend_selected", backend="file", path=settings.state_path)
    return FileBackend(settings.state_path)


__all__ = ["DurableStorage", "MemoryBackend", "FileBackend", "build_backend"]
