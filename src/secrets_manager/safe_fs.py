"""Filesystem placement helpers: temp-then-rename writes, metadata, symlinks."""

from __future__ import annotations

import logging
import os
import stat
import tempfile
from pathlib import Path

from .errors import LinkError

logger = logging.getLogger("secrets_manager.safe_fs")


def write_temp(target: Path, content: bytes) -> Path:
    """Write content to a private temporary file beside ``target``.

    The file is created with mode 0600 in the target's directory so the
    final rename is atomic. The caller renames or discards it.

    Args:
        target: Final destination of the content.
        content: Bytes to write.

    Returns:
        Path of the temporary file.
    """
    fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    return Path(tmp)


def discard(path: Path) -> None:
    """Remove a file, logging instead of raising on failure."""
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not remove %s: %s", path, exc)


def copy_metadata(reference: Path, target: Path) -> None:
    """Give ``target`` the owner, group, and permission bits of ``reference``.

    The reference is stat'ed right here rather than earlier in the
    pipeline. Ownership is only changed when it differs, so unprivileged
    runs on files they own succeed.
    """
    ref = os.stat(reference)
    current = os.stat(target)
    if (current.st_uid, current.st_gid) != (ref.st_uid, ref.st_gid):
        os.chown(target, ref.st_uid, ref.st_gid)
    os.chmod(target, stat.S_IMODE(ref.st_mode))


def ensure_symlink(link: Path, target: Path) -> bool:
    """Create ``link`` pointing at ``target`` unless it already does.

    Args:
        link: Where the symlink goes.
        target: Absolute path it must point to.

    Returns:
        True if a link was created, False if the correct one existed.

    Raises:
        LinkError: If something else already occupies ``link``.
    """
    link.parent.mkdir(parents=True, exist_ok=True)
    if link.is_symlink():
        current = os.readlink(link)
        if Path(current) == target:
            return False
        raise LinkError(f"Symlink at '{link}' points to '{current}', not '{target}'")
    if link.exists():
        raise LinkError(f"'{link}' already exists and is not a symlink, refusing to replace it")
    os.symlink(target, link)
    logger.info("Linked %s -> %s", link, target)
    return True
