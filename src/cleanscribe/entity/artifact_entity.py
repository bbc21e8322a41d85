from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple


class UnitStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    DEGRADED = "degraded"                # diarization dropped by the docker fallback
    FAILED = "failed"


class FailureReason(str, Enum):
    NONZERO_EXIT = "nonzero-exit"
    TOOL_NOT_FOUND = "tool-not-found"
    MISSING_CREDENTIAL = "missing-credential"
    TIMEOUT = "timeout"
    INVALID_PATH = "invalid-path"
    UNEXPECTED = "unexpected-error"


@dataclass(frozen=True)
class SourceFile:
    path: Path
    extension: str                       # lower-case, no dot
    size: int
    mtime: int                           # whole seconds, like `stat -c %Y`

    @property
    def stem(self) -> str:
        return self.path.stem


@dataclass(frozen=True)
class Fingerprint:
    filter_sha: str
    input_size: int
    input_mtime: int


@dataclass(frozen=True)
class CleanArtifact:
    path: Path
    meta_path: Path

    @property
    def base_name(self) -> str:
        return self.path.stem            # e.g. "foo_clean"


@dataclass(frozen=True)
class UnitResult:
    stage: str                           # "clean" | "transcribe"
    item: Path
    status: UnitStatus
    reason: Optional[FailureReason] = None
    detail: str = ""
    warnings: Tuple[str, ...] = ()
    returncode: Optional[int] = None
    duration_sec: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status in (UnitStatus.SKIPPED, UnitStatus.SUCCEEDED, UnitStatus.DEGRADED)


@dataclass
class StageReport:
    stage: str
    results: List[UnitResult] = field(default_factory=list)

    def _count(self, status: UnitStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def n_total(self) -> int:
        return len(self.results)

    @property
    def n_succeeded(self) -> int:
        return self._count(UnitStatus.SUCCEEDED)

    @property
    def n_skipped(self) -> int:
        return self._count(UnitStatus.SKIPPED)

    @property
    def n_degraded(self) -> int:
        return self._count(UnitStatus.DEGRADED)

    @property
    def n_failed(self) -> int:
        return self._count(UnitStatus.FAILED)

    def failures(self, reason: Optional[FailureReason] = None) -> List[UnitResult]:
        return [
            r for r in self.results
            if r.status == UnitStatus.FAILED and (reason is None or r.reason == reason)
        ]

    def summary(self) -> dict:
        return {
            "stage": self.stage,
            "total": self.n_total,
            "succeeded": self.n_succeeded,
            "skipped": self.n_skipped,
            "degraded": self.n_degraded,
            "failed": self.n_failed,
        }


@dataclass(frozen=True)
class PipelineArtifact:
    run_id: str
    mode: str
    n_sources: int
    n_clean_artifacts: int
    cleaning: StageReport
    transcription: StageReport
    exit_code: int
    fatal_reason: Optional[str] = None
    units_parquet_path: Optional[Path] = None
    summary_json_path: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0
