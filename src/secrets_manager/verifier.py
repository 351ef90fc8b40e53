"""
Integrity verification of an export tree.

Walks every ``sha256sums.txt`` under an export root and re-hashes the
files they list. Needs no passphrase and never writes to the tree, so it
can run at any time, including alongside itself.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from .digest import digest_equal, digest_file
from .errors import IntegrityError
from .manifest import MANIFEST_NAME, Manifest
from .models import VerifyReport
from .resolver import CIPHERTEXT_SUFFIX

logger = logging.getLogger("secrets_manager.verifier")


def find_manifests(export_root: Path) -> list[Path]:
    """All manifest files below an export root, sorted."""
    return sorted(p for p in Path(export_root).rglob(MANIFEST_NAME) if p.is_file())


def _rel(path: Path, root: Path) -> str:
    return path.relative_to(root).as_posix()


def verify_manifests(export_root: Path, manifests: Iterable[Path]) -> VerifyReport:
    """Check the entries of specific manifests.

    Args:
        export_root: Root that reported paths are relative to.
        manifests: Manifest files to check.

    Returns:
        VerifyReport: Passed and failed files.
    """
    root = Path(export_root)
    report = VerifyReport(root=str(root))

    for manifest_path in manifests:
        manifest_path = Path(manifest_path)
        report.manifests.append(_rel(manifest_path, root))
        try:
            manifest = Manifest.load(manifest_path.parent)
        except (IntegrityError, OSError) as exc:
            report.failed[_rel(manifest_path, root)] = str(exc)
            continue

        for record in manifest.entries():
            file_path = manifest_path.parent / record.relative_path
            rel = _rel(file_path, root)
            try:
                actual = digest_file(file_path)
            except FileNotFoundError:
                report.failed[rel] = "missing"
                continue
            except OSError as exc:
                report.failed[rel] = f"unreadable: {exc}"
                continue

            if digest_equal(actual, record.digest):
                report.passed.add(rel)
            else:
                report.failed[rel] = "checksum mismatch"

    for rel in report.failed:
        logger.warning("Integrity check failed: %s (%s)", rel, report.failed[rel])
    logger.info(
        "Verified %d manifests: %d passed, %d failed",
        len(report.manifests), len(report.passed), len(report.failed),
    )
    return report


def verify(export_root: Path) -> VerifyReport:
    """Re-validate every manifest under an export root.

    Ciphertext files that no manifest covers are listed in
    ``unlisted`` without failing the check.

    Args:
        export_root: Directory holding an existing export.

    Returns:
        VerifyReport: Passed, failed, and unlisted files.

    Raises:
        FileNotFoundError: If the root does not exist.
        NotADirectoryError: If the root is not a directory.
    """
    root = Path(export_root)
    if not root.exists():
        raise FileNotFoundError(f"Export root '{root}' does not exist")
    if not root.is_dir():
        raise NotADirectoryError(f"Export root '{root}' is not a directory")

    report = verify_manifests(root, find_manifests(root))

    covered = report.passed | set(report.failed)
    for path in sorted(root.rglob(f"*{CIPHERTEXT_SUFFIX}")):
        rel = _rel(path, root)
        if path.is_file() and rel not in covered:
            report.unlisted.add(rel)
    return report
