"""
Data model for rules, resolved operations, and run reports.

Rules and policies come from the configuration file and are validated
with pydantic. Operations and results are produced at runtime and are
plain dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

SHARED_PROFILE = "shared"
PROFILE_TOKEN = "$profile"
DEFAULT_WORK_FACTOR = 18


class Direction(str, Enum):
    """Which way an operation moves a secret."""

    EXPORT = "export"
    IMPORT = "import"


class OperationStatus(str, Enum):
    """Terminal state of a single operation."""

    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled-back"


class FailureKind(str, Enum):
    """Why an operation failed."""

    INTEGRITY = "integrity"
    CIPHER = "cipher"
    LINK = "link"
    IO = "io"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class Rule(BaseModel):
    """A declared mapping from a source location to an endpoint for some files."""

    model_config = ConfigDict(extra="forbid")

    source: str
    endpoint: str
    files: list[str] = Field(min_length=1)
    symlinks_to: Optional[str] = None


class TransferPolicy(BaseModel):
    """Knobs controlling how a run schedules and fails operations."""

    model_config = ConfigDict(extra="forbid")

    jobs: int = Field(default=1, ge=1, description="Concurrent operations (1 = sequential)")
    fail_fast: bool = Field(default=False, description="Stop starting operations after a failure")
    cleanup_failed_siblings: bool = Field(
        default=False,
        description="Remove ciphertexts placed by this run in a directory where another export failed",
    )
    no_clobber: bool = Field(default=False, description="Refuse to overwrite differing files on export or import")
    scrypt_work_factor: int = Field(default=DEFAULT_WORK_FACTOR, ge=1, le=22)


class SecretsConfig(BaseModel):
    """Parsed configuration: export and import rules keyed by profile."""

    model_config = ConfigDict(extra="forbid")

    exports: dict[str, list[Rule]] = Field(default_factory=dict)
    imports: dict[str, list[Rule]] = Field(default_factory=dict)
    settings: TransferPolicy = Field(default_factory=TransferPolicy)


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Operation:
    """One concrete file transfer resolved from a rule.

    The export-tree side of the operation (``endpoint_path`` on export,
    ``source_path`` on import) is relative to the export root; the local
    side is absolute.
    """

    action: Direction
    source_path: Path
    endpoint_path: Path
    symlink_target: Optional[Path] = None

    @property
    def tree_path(self) -> PurePosixPath:
        """Path of the ciphertext relative to the export root."""
        rel = self.endpoint_path if self.action == Direction.EXPORT else self.source_path
        return PurePosixPath(rel.as_posix())

    @property
    def local_path(self) -> Path:
        """Absolute path of the plaintext on this machine."""
        return self.source_path if self.action == Direction.EXPORT else self.endpoint_path

    @property
    def rel_path(self) -> str:
        return str(self.tree_path)


@dataclass
class OperationResult:
    """Outcome of one operation."""

    operation: Operation
    status: OperationStatus
    kind: Optional[FailureKind] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (OperationStatus.SUCCEEDED, OperationStatus.SKIPPED)


@dataclass
class VerifyReport:
    """Result of re-validating the manifests of an export tree.

    Attributes:
        root: The export root all paths are relative to.
        passed: Files whose checksum matched.
        failed: Failing file (or manifest) path -> reason.
        unlisted: Ciphertext files not covered by any manifest.
        manifests: Manifest files that were checked.
    """

    root: str
    passed: set[str] = field(default_factory=set)
    failed: dict[str, str] = field(default_factory=dict)
    unlisted: set[str] = field(default_factory=set)
    manifests: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {
            "root": self.root,
            "ok": self.ok,
            "passed": sorted(self.passed),
            "failed": dict(sorted(self.failed.items())),
            "unlisted": sorted(self.unlisted),
            "manifests": list(self.manifests),
        }


@dataclass
class RunReport:
    """Aggregate outcome of an export or import run.

    Attributes:
        direction: Export or import.
        results: One result per resolved operation, in resolution order.
        verification: Closing integrity pass (exports only).
        aborted: Reason the run stopped early, if it did.
    """

    direction: Direction
    results: list[OperationResult] = field(default_factory=list)
    verification: Optional[VerifyReport] = None
    aborted: Optional[str] = None

    def _with_status(self, *statuses: OperationStatus) -> list[OperationResult]:
        return [r for r in self.results if r.status in statuses]

    @property
    def succeeded(self) -> list[OperationResult]:
        return self._with_status(OperationStatus.SUCCEEDED, OperationStatus.SKIPPED)

    @property
    def failed(self) -> list[OperationResult]:
        return self._with_status(OperationStatus.FAILED, OperationStatus.ROLLED_BACK)

    @property
    def cancelled(self) -> list[OperationResult]:
        return self._with_status(OperationStatus.CANCELLED)

    @property
    def ok(self) -> bool:
        """True when every operation succeeded and the closing pass (if any) is clean."""
        if self.aborted or self.failed or self.cancelled:
            return False
        return self.verification is None or self.verification.ok

    def to_dict(self) -> dict:
        return {
            "direction": self.direction.value,
            "ok": self.ok,
            "aborted": self.aborted,
            "results": [
                {
                    "path": r.operation.rel_path,
                    "local": str(r.operation.local_path),
                    "status": r.status.value,
                    "kind": r.kind.value if r.kind else None,
                    "message": r.message,
                }
                for r in self.results
            ],
            "verification": self.verification.to_dict() if self.verification else None,
        }
