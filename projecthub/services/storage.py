"""Local disk store for submission files.

The lifecycle manager only sees opaque references returned by `store`;
it never reads file content back.
"""

import logging
import random
import re
import time
import unicodedata
from pathlib import Path
from typing import Protocol

from projecthub.core.config import UPLOAD_DIR

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9\-_.]")
_REPEATED_UNDERSCORES = re.compile(r"_{2,}")


class FileStorage(Protocol):
    def store(self, data: bytes, filename: str, content_type: str | None = None) -> str: ...

    def delete(self, ref: str) -> None: ...


def file_extension(filename: str) -> str:
    """Lower-case extension without the dot ("" when there is none)."""
    return Path(filename).suffix.lower().lstrip(".")


def safe_filename(original: str) -> str:
    path = Path(original)
    ext = path.suffix.lower()
    base = unicodedata.normalize("NFKD", path.stem).encode("ascii", "ignore").decode("ascii")
    base = _UNSAFE_CHARS.sub("_", base)
    base = _REPEATED_UNDERSCORES.sub("_", base).strip("_")[:50].lower()
    if not base:
        base = "file"

    unique_suffix = f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}"
    return f"{base}_{unique_suffix}{ext}"


class LocalFileStorage:
    def __init__(self, root: Path = UPLOAD_DIR):
        self.root = Path(root)

    def _path(self, ref: str) -> Path:
        path = (self.root / ref).resolve()
        if path.parent != self.root.resolve():
            raise ValueError(f"invalid storage reference: {ref!r}")
        return path

    def store(self, data: bytes, filename: str, content_type: str | None = None) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        ref = safe_filename(filename)
        self._path(ref).write_bytes(data)
        logger.info("stored %s as %s (%d bytes)", filename, ref, len(data))
        return ref

    def open(self, ref: str) -> Path:
        path = self._path(ref)
        if not path.exists():
            raise FileNotFoundError(ref)
        return path

    def delete(self, ref: str) -> None:
        self._path(ref).unlink(missing_ok=True)
        logger.info("deleted stored file %s", ref)


_storage: LocalFileStorage | None = None


def get_storage() -> LocalFileStorage:
    global _storage
    if _storage is None:
        _storage = LocalFileStorage()
    return _storage
