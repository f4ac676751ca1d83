"""Binary storage for design save files, thumbnails and crash files."""
from __future__ import annotations

import base64
import binascii
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from .errors import ValidationError

logger = logging.getLogger(__name__)

THUMBNAIL_URL_PREFIX = "/api/thumbnails/"


def decode_base64(data: str, field: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"{field} must be base64 encoded") from exc


def thumbnail_filename(design_id: str) -> str:
    return f"{design_id}.png"


class BlobStore(ABC):
    """Interface for design payloads, thumbnails and crash files."""

    @abstractmethod
    def save_design(self, design_id: str, data: bytes) -> str:
        """Store a save file, overwriting any previous one, and return its reference."""

    @abstractmethod
    def load_design(self, design_id: str) -> bytes:
        """Return the stored save file.

        Raises:
            KeyError: If no save file exists for ``design_id``.
        """

    @abstractmethod
    def has_design(self, design_id: str) -> bool:
        """Return whether a save file exists for ``design_id``."""

    @abstractmethod
    def save_thumbnail(self, design_id: str, data: bytes) -> Optional[str]:
        """Store a thumbnail and return the URL clients fetch it from."""

    @abstractmethod
    def thumbnail_path(self, filename: str) -> Optional[Path]:
        """Return the on-disk location of a stored thumbnail, if any."""

    @abstractmethod
    def save_crash(self, crash_id: str, data: bytes) -> None:
        """Store the file attached to a crash report."""

    @abstractmethod
    def load_crash(self, crash_id: str) -> bytes:
        """Return the stored crash file.

        Raises:
            KeyError: If no file exists for ``crash_id``.
        """

    @abstractmethod
    def delete_crash(self, crash_id: str) -> None:
        """Remove the crash file if it exists."""

    @abstractmethod
    def delete(self, design_id: str) -> None:
        """Remove the save file and thumbnail of ``design_id`` if they exist."""

    @abstractmethod
    def clear(self) -> None:
        """Remove every stored save file and thumbnail."""


class InMemoryBlobStore(BlobStore):
    """Keep blobs in local process memory."""

    def __init__(self) -> None:
        self.designs: Dict[str, bytes] = {}
        self.thumbnails: Dict[str, bytes] = {}
        self.crashes: Dict[str, bytes] = {}

    def save_design(self, design_id: str, data: bytes) -> str:
        self.designs[design_id] = data
        return f"{design_id}.sav"

    def load_design(self, design_id: str) -> bytes:
        try:
            return self.designs[design_id]
        except KeyError as exc:
            raise KeyError(f"Design blob '{design_id}' does not exist") from exc

    def has_design(self, design_id: str) -> bool:
        return design_id in self.designs

    def save_thumbnail(self, design_id: str, data: bytes) -> Optional[str]:
        filename = thumbnail_filename(design_id)
        self.thumbnails[filename] = data
        return THUMBNAIL_URL_PREFIX + filename

    def thumbnail_path(self, filename: str) -> Optional[Path]:
        return None

    def save_crash(self, crash_id: str, data: bytes) -> None:
        self.crashes[crash_id] = data

    def load_crash(self, crash_id: str) -> bytes:
        try:
            return self.crashes[crash_id]
        except KeyError as exc:
            raise KeyError(f"Crash file '{crash_id}' does not exist") from exc

    def delete_crash(self, crash_id: str) -> None:
        self.crashes.pop(crash_id, None)

    def delete(self, design_id: str) -> None:
        self.designs.pop(design_id, None)
        self.thumbnails.pop(thumbnail_filename(design_id), None)

    def clear(self) -> None:
        self.designs.clear()
        self.thumbnails.clear()


class FileBlobStore(BlobStore):
    """Persist files under ``designs/``, ``thumbnails/`` and ``crashes/`` of one directory."""

    def __init__(self, storage_dir: Path) -> None:
        self.storage_dir = Path(storage_dir)
        self.designs_dir = self.storage_dir / "designs"
        self.thumbnails_dir = self.storage_dir / "thumbnails"
        self.crashes_dir = self.storage_dir / "crashes"
        self.designs_dir.mkdir(parents=True, exist_ok=True)
        self.thumbnails_dir.mkdir(parents=True, exist_ok=True)
        self.crashes_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(cls) -> "FileBlobStore":
        return cls(Path(os.environ.get("DESIGN_SERVER_STORAGE_DIR", "./storage")))

    def save_design(self, design_id: str, data: bytes) -> str:
        path = self._design_path(design_id)
        path.write_bytes(data)
        return path.name

    def load_design(self, design_id: str) -> bytes:
        path = self._design_path(design_id)
        if not path.exists():
            raise KeyError(f"Design blob '{design_id}' does not exist")
        return path.read_bytes()

    def has_design(self, design_id: str) -> bool:
        return self._design_path(design_id).exists()

    def save_thumbnail(self, design_id: str, data: bytes) -> Optional[str]:
        filename = thumbnail_filename(_validate_key(design_id))
        try:
            (self.thumbnails_dir / filename).write_bytes(data)
        except OSError:
            logger.exception("Failed to save thumbnail for design %s", design_id)
            return None
        return THUMBNAIL_URL_PREFIX + filename

    def thumbnail_path(self, filename: str) -> Optional[Path]:
        try:
            path = self.thumbnails_dir / _validate_key(filename)
        except ValidationError:
            return None
        return path if path.is_file() else None

    def save_crash(self, crash_id: str, data: bytes) -> None:
        self._crash_path(crash_id).write_bytes(data)

    def load_crash(self, crash_id: str) -> bytes:
        path = self._crash_path(crash_id)
        if not path.exists():
            raise KeyError(f"Crash file '{crash_id}' does not exist")
        return path.read_bytes()

    def delete_crash(self, crash_id: str) -> None:
        path = self._crash_path(crash_id)
        if path.exists():
            path.unlink()

    def delete(self, design_id: str) -> None:
        for path in (
            self._design_path(design_id),
            self.thumbnails_dir / thumbnail_filename(_validate_key(design_id)),
        ):
            if path.exists():
                path.unlink()

    def clear(self) -> None:
        for directory in (self.designs_dir, self.thumbnails_dir):
            for path in directory.iterdir():
                if path.is_file():
                    path.unlink()

    def _design_path(self, design_id: str) -> Path:
        return self.designs_dir / f"{_validate_key(design_id)}.sav"

    def _crash_path(self, crash_id: str) -> Path:
        return self.crashes_dir / f"{_validate_key(crash_id)}.crash"


def _validate_key(key: str) -> str:
    if not isinstance(key, str):
        raise TypeError("blob key must be a string")
    if not key or key != key.strip() or "/" in key or "\\" in key or key.startswith("."):
        raise ValidationError(f"Invalid blob key {key!r}")
    return key
