"""
Transfer Engine -- export and import of resolved operations.

    export:  read -> digest -> encrypt(digest + plaintext) -> verify write
             -> copy owner/mode -> record in manifest -> rename into place
    import:  check manifest -> decrypt -> write -> check embedded digest
             -> copy owner/mode -> rename into place -> symlink

Each operation ends Succeeded, Skipped, Failed, or Cancelled. Failures
are collected, never raised, so one bad file does not stop the rest of
the run. Only a manifest that cannot be written aborts the run.

Operations run sequentially unless the policy allows more jobs, in
which case they run on a thread pool; manifest updates serialize per
directory through the ledger.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional, Sequence

from . import safe_fs
from .cipher import AgeCipher
from .digest import digest, digest_equal, digest_file
from .errors import CipherError, IntegrityError, LinkError, ManifestError
from .manifest import Manifest, ManifestLedger
from .models import (
    Direction,
    FailureKind,
    Operation,
    OperationResult,
    OperationStatus,
    RunReport,
    TransferPolicy,
)
from .verifier import verify_manifests

logger = logging.getLogger("secrets_manager.engine")

ResultCallback = Callable[[OperationResult], None]

_OPERATION_ERRORS = (IntegrityError, CipherError, LinkError, OSError)


def failure_kind(exc: BaseException) -> FailureKind:
    """Map an exception to the failure kind reported for it."""
    if isinstance(exc, IntegrityError):
        return FailureKind.INTEGRITY
    if isinstance(exc, CipherError):
        return FailureKind.CIPHER
    if isinstance(exc, LinkError):
        return FailureKind.LINK
    return FailureKind.IO


class TransferEngine:
    """Runs export and import operations with integrity checks around each.

    Args:
        cipher: Cipher bound to this run's passphrase.
        policy: Scheduling and failure policy.
        on_result: Called with each operation's result as it completes.
    """

    def __init__(
        self,
        cipher: AgeCipher,
        policy: Optional[TransferPolicy] = None,
        on_result: Optional[ResultCallback] = None,
    ) -> None:
        self.cipher = cipher
        self.policy = policy or TransferPolicy()
        self._on_result = on_result
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop starting new operations of the current or next run.

        In-flight operations run to completion. The request is consumed when
        the run ends.
        """
        self._cancel.set()

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------

    def export_secrets(
        self,
        operations: Sequence[Operation],
        export_root: Path,
        bundle: Sequence[Path] = (),
    ) -> RunReport:
        """Encrypt every operation's source into the export tree.

        Args:
            operations: Resolved export operations.
            export_root: Destination directory of the export.
            bundle: Extra cleartext files (e.g. the config) copied to the
                export root and recorded in its manifest.

        Returns:
            RunReport: Per-operation results plus the closing integrity pass.

        Raises:
            OSError: If the export root or a bundled file cannot be written.
            ManifestError: If a bundled file cannot be recorded.
        """
        _require_direction(operations, Direction.EXPORT)
        root = Path(export_root)
        root.mkdir(parents=True, exist_ok=True)
        ledger = ManifestLedger()

        for path in bundle:
            self._bundle_file(Path(path), root, ledger)

        report = RunReport(direction=Direction.EXPORT)
        report.results, report.aborted = self._run(
            operations, lambda op: self._export_one(op, root, ledger),
        )

        if self.policy.cleanup_failed_siblings and report.aborted is None:
            try:
                self._rollback_siblings(report.results, root, ledger)
            except ManifestError as exc:
                report.aborted = str(exc)

        report.verification = verify_manifests(root, ledger.written)
        logger.info(
            "Export to %s: %d ok, %d failed, %d cancelled, closing pass %s",
            root, len(report.succeeded), len(report.failed), len(report.cancelled),
            "clean" if report.verification.ok else "FAILED",
        )
        return report

    def import_secrets(self, operations: Sequence[Operation], export_root: Path) -> RunReport:
        """Decrypt every operation's ciphertext from the export tree into place.

        Args:
            operations: Resolved import operations.
            export_root: Directory holding an existing export.

        Returns:
            RunReport: Per-operation results.

        Raises:
            FileNotFoundError: If the export root does not exist.
            NotADirectoryError: If it is not a directory.
        """
        _require_direction(operations, Direction.IMPORT)
        root = Path(export_root)
        if not root.exists():
            raise FileNotFoundError(f"Source path '{root}' does not exist")
        if not root.is_dir():
            raise NotADirectoryError(f"Source path '{root}' is not a directory")

        report = RunReport(direction=Direction.IMPORT)
        report.results, report.aborted = self._run(
            operations, lambda op: self._import_one(op, root),
        )
        logger.info(
            "Import from %s: %d ok, %d failed, %d cancelled",
            root, len(report.succeeded), len(report.failed), len(report.cancelled),
        )
        return report

    # -------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------

    def _run(
        self,
        operations: Sequence[Operation],
        worker: Callable[[Operation], OperationResult],
    ) -> tuple[list[OperationResult], Optional[str]]:
        aborted: list[str] = []

        def task(op: Operation) -> OperationResult:
            if self._cancel.is_set():
                result = OperationResult(
                    op, OperationStatus.CANCELLED, message="run stopped before this operation started",
                )
            else:
                try:
                    result = worker(op)
                except ManifestError as exc:
                    logger.error("Aborting run: %s", exc)
                    aborted.append(str(exc))
                    self._cancel.set()
                    result = OperationResult(op, OperationStatus.FAILED, FailureKind.IO, str(exc))
                if result.status == OperationStatus.FAILED and self.policy.fail_fast:
                    self._cancel.set()
            if self._on_result is not None:
                self._on_result(result)
            return result

        try:
            if self.policy.jobs <= 1 or len(operations) <= 1:
                results = [task(op) for op in operations]
            else:
                with ThreadPoolExecutor(max_workers=self.policy.jobs) as pool:
                    results = list(pool.map(task, operations))
        finally:
            self._cancel.clear()

        return results, (aborted[0] if aborted else None)

    def _failed(
        self,
        op: Operation,
        exc: BaseException,
        kind: Optional[FailureKind] = None,
    ) -> OperationResult:
        kind = kind or failure_kind(exc)
        logger.error("%s of %s failed (%s): %s", op.action.value, op.rel_path, kind.value, exc)
        return OperationResult(op, OperationStatus.FAILED, kind, str(exc))

    # -------------------------------------------------------------------
    # Export
    # -------------------------------------------------------------------

    def _already_exported(self, target: Path, plaintext: bytes, plain_digest: str) -> bool:
        """Whether ``target`` already holds this plaintext under this passphrase."""
        if not target.is_file():
            return False
        try:
            recovered, embedded = self.cipher.unseal(target.read_bytes())
        except (CipherError, IntegrityError) as exc:
            logger.info("Existing %s cannot be reused (%s), re-encrypting", target, exc)
            return False
        return recovered == plaintext and digest_equal(embedded, plain_digest)

    def _export_one(self, op: Operation, root: Path, ledger: ManifestLedger) -> OperationResult:
        """Export one file.

        The manifest entry is written before the new ciphertext is renamed
        into place, so a failing manifest leaves any previous ciphertext
        and its entry untouched.
        """
        target = root / op.endpoint_path
        tmp: Optional[Path] = None
        try:
            plaintext = op.source_path.read_bytes()
            plain_digest = digest(plaintext)
            target.parent.mkdir(parents=True, exist_ok=True)

            if self._already_exported(target, plaintext, plain_digest):
                safe_fs.copy_metadata(op.source_path, target)
                cipher_digest = digest_file(target)
                status = OperationStatus.SKIPPED
            else:
                if self.policy.no_clobber and target.exists():
                    raise FileExistsError(
                        errno.EEXIST,
                        "Existing ciphertext differs from the secret, refusing to overwrite it",
                        str(target),
                    )
                tmp = safe_fs.write_temp(target, self.cipher.seal(plaintext, plain_digest))
                recovered, embedded = self.cipher.unseal(tmp.read_bytes())
                if recovered != plaintext or not digest_equal(embedded, plain_digest):
                    raise IntegrityError(
                        f"Decryption of the written ciphertext does not match '{op.source_path}'"
                    )
                safe_fs.copy_metadata(op.source_path, tmp)
                cipher_digest = digest_file(tmp)
                status = OperationStatus.SUCCEEDED

            previous = digest_file(target) if tmp is not None and target.is_file() else None
            ledger.record(target.parent, target.name, cipher_digest)
            if tmp is not None:
                try:
                    os.replace(tmp, target)
                except OSError:
                    self._restore_entry(ledger, target, previous)
                    raise
                tmp = None
        except _OPERATION_ERRORS as exc:
            return self._failed(op, exc)
        finally:
            if tmp is not None:
                safe_fs.discard(tmp)

        if status == OperationStatus.SKIPPED:
            logger.info("%s already exported", op.rel_path)
            return OperationResult(op, status, message="already exported")
        logger.info("Exported %s -> %s", op.source_path, op.rel_path)
        return OperationResult(op, status)

    @staticmethod
    def _restore_entry(ledger: ManifestLedger, target: Path, previous: Optional[str]) -> None:
        """Point the manifest back at whatever is still on disk at ``target``."""
        if previous is None:
            ledger.discard(target.parent, [target.name])
        else:
            ledger.record(target.parent, target.name, previous)

    def _rollback_siblings(
        self,
        results: list[OperationResult],
        root: Path,
        ledger: ManifestLedger,
    ) -> None:
        """Remove this run's ciphertexts from directories where an export failed."""
        failed_dirs = {
            (root / r.operation.endpoint_path).parent
            for r in results if r.status == OperationStatus.FAILED
        }
        removed: dict[Path, list[str]] = {}
        for r in results:
            target = root / r.operation.endpoint_path
            if r.status != OperationStatus.SUCCEEDED or target.parent not in failed_dirs:
                continue
            safe_fs.discard(target)
            removed.setdefault(target.parent, []).append(target.name)
            r.status = OperationStatus.ROLLED_BACK
            r.message = "removed because another export in the same directory failed"
            logger.warning("Rolled back %s", r.operation.rel_path)

        for directory, names in removed.items():
            ledger.discard(directory, names)

    def _bundle_file(self, path: Path, root: Path, ledger: ManifestLedger) -> None:
        target = root / path.name
        shutil.copyfile(path, target)
        ledger.record(root, target.name, digest_file(target))
        logger.info("Bundled %s into %s", path, root)

    # -------------------------------------------------------------------
    # Import
    # -------------------------------------------------------------------

    def _precheck(self, source: Path) -> None:
        """Compare a ciphertext with the digest recorded in its directory's manifest."""
        manifest = Manifest.load(source.parent)
        expected = manifest.get(source.name)
        if expected is None:
            raise IntegrityError(f"'{source}' has no entry in '{manifest.path}'")
        if not digest_equal(digest_file(source), expected):
            raise IntegrityError(
                f"File at '{source}' doesn't match its hash in '{manifest.path}'. "
                "Possible integrity issue"
            )

    def _import_one(self, op: Operation, root: Path) -> OperationResult:
        source = root / op.source_path
        target = op.endpoint_path
        tmp: Optional[Path] = None
        try:
            self._precheck(source)
            plaintext, embedded = self.cipher.unseal(source.read_bytes())
            target.parent.mkdir(parents=True, exist_ok=True)

            if self.policy.no_clobber and target.exists() and target.read_bytes() != plaintext:
                raise FileExistsError(
                    errno.EEXIST,
                    "Existing file differs from the imported secret, refusing to overwrite it",
                    str(target),
                )

            tmp = safe_fs.write_temp(target, plaintext)
            if not digest_equal(digest_file(tmp), embedded):
                raise IntegrityError(
                    f"Imported content for '{target}' doesn't match its embedded checksum"
                )
            safe_fs.copy_metadata(source, tmp)
            os.replace(tmp, target)
            tmp = None
        except _OPERATION_ERRORS as exc:
            return self._failed(op, exc)
        finally:
            if tmp is not None:
                safe_fs.discard(tmp)

        logger.info("Imported %s -> %s", op.rel_path, target)

        if op.symlink_target is not None:
            try:
                safe_fs.ensure_symlink(op.symlink_target, target.absolute())
            except (LinkError, OSError) as exc:
                return self._failed(op, exc, kind=FailureKind.LINK)

        return OperationResult(op, OperationStatus.SUCCEEDED)


def _require_direction(operations: Sequence[Operation], direction: Direction) -> None:
    for op in operations:
        if op.action != direction:
            raise ValueError(f"Expected {direction.value} operations, got {op.action.value} for {op.rel_path}")
