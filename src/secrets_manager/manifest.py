"""
Checksum manifests for export directories.

Every directory of an export tree holds a ``sha256sums.txt`` listing the
SHA-256 of each ciphertext in it, in the format ``sha256sum`` reads:

    <64 hex digits>  <file name>

so the tree can be checked with ``sha256sum -c`` and no secrets.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .errors import IntegrityError, ManifestError

logger = logging.getLogger("secrets_manager.manifest")

MANIFEST_NAME = "sha256sums.txt"

_LINE_RE = re.compile(r"^([0-9a-fA-F]{64}) [ *](.+)$")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


@dataclass(frozen=True)
class ChecksumRecord:
    """One manifest line."""

    relative_path: str
    digest: str

    def render(self) -> str:
        return f"{self.digest}  {self.relative_path}"


def _valid_name(name: str) -> bool:
    return (
        bool(name)
        and not name.startswith("/")
        and ".." not in name.split("/")
        and not _CONTROL_CHARS.search(name)
    )


class Manifest:
    """Ordered checksum ledger for one export directory.

    Args:
        directory: Directory the manifest describes.
        records: Initial file name -> digest mapping.
    """

    def __init__(self, directory: Path, records: Optional[dict[str, str]] = None) -> None:
        self.directory = Path(directory)
        self._records: dict[str, str] = dict(records or {})

    @property
    def path(self) -> Path:
        return self.directory / MANIFEST_NAME

    @classmethod
    def parse(cls, directory: Path, text: str) -> "Manifest":
        """Parse manifest text.

        Raises:
            IntegrityError: On any ill-formatted line.
        """
        manifest = cls(directory)
        for lineno, line in enumerate(text.splitlines(), start=1):
            match = _LINE_RE.match(line)
            if match is None or not _valid_name(match.group(2)):
                raise IntegrityError(
                    f"Ill-formatted checksum file at '{manifest.path}' (line {lineno})"
                )
            manifest._records[match.group(2)] = match.group(1).lower()
        return manifest

    @classmethod
    def load(cls, directory: Path) -> "Manifest":
        """Read the manifest of a directory.

        Raises:
            IntegrityError: If the manifest is missing or ill-formatted.
            OSError: If it exists but cannot be read.
        """
        path = Path(directory) / MANIFEST_NAME
        if not path.is_file():
            raise IntegrityError(f"Missing checksum file at '{path}'")
        return cls.parse(directory, path.read_text(encoding="utf-8"))

    @classmethod
    def load_or_empty(cls, directory: Path) -> "Manifest":
        if not (Path(directory) / MANIFEST_NAME).exists():
            return cls(directory)
        return cls.load(directory)

    def get(self, name: str) -> Optional[str]:
        return self._records.get(name)

    def set(self, name: str, digest: str) -> None:
        """Record a digest, replacing any previous entry for the same file."""
        if not _valid_name(name):
            raise ValueError(f"Invalid manifest entry name: {name!r}")
        self._records[name] = digest.lower()

    def remove(self, name: str) -> bool:
        return self._records.pop(name, None) is not None

    def entries(self) -> list[ChecksumRecord]:
        return [ChecksumRecord(name, digest) for name, digest in self._records.items()]

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, name: object) -> bool:
        return name in self._records

    def render(self) -> str:
        return "".join(record.render() + "\n" for record in self.entries())

    def save(self) -> Path:
        """Atomically write the manifest to its directory.

        Returns:
            Path of the written manifest.
        """
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{MANIFEST_NAME}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(self.render())
            os.chmod(tmp, 0o644)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        return self.path


class ManifestLedger:
    """Serializes manifest updates across concurrent operations.

    Each directory gets its own lock; every update re-reads the manifest
    from disk, applies the change, and writes it back under that lock.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Path, threading.Lock] = {}
        self._written: set[Path] = set()

    def _lock_for(self, directory: Path) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(directory, threading.Lock())

    def record(self, directory: Path, name: str, digest: str) -> None:
        """Replace-or-append a checksum entry.

        Raises:
            ManifestError: If the manifest cannot be read back or written.
        """
        directory = Path(directory)
        with self._lock_for(directory):
            try:
                manifest = Manifest.load_or_empty(directory)
                manifest.set(name, digest)
                path = manifest.save()
            except (OSError, IntegrityError) as exc:
                raise ManifestError(
                    f"Failed to write checksum file in '{directory}': {exc}"
                ) from exc
        with self._guard:
            self._written.add(path)
        logger.debug("Recorded %s in %s", name, path)

    def discard(self, directory: Path, names: Iterable[str]) -> None:
        """Drop entries from a directory's manifest.

        Raises:
            ManifestError: If the manifest cannot be rewritten.
        """
        directory = Path(directory)
        with self._lock_for(directory):
            try:
                manifest = Manifest.load_or_empty(directory)
                removed = [name for name in names if manifest.remove(name)]
                if removed:
                    manifest.save()
            except (OSError, IntegrityError) as exc:
                raise ManifestError(
                    f"Failed to write checksum file in '{directory}': {exc}"
                ) from exc

    @property
    def written(self) -> list[Path]:
        """Manifests touched so far, sorted."""
        with self._guard:
            return sorted(self._written)
