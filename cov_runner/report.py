"""
Run results and the run report.

Every artifact produces an ArtifactResult, whether or not its
instrumentation succeeded. The RunReport collects those results plus the
outcome of the upload step and decides the process exit code.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .upload.uploader import UploadResult

# Artifact statuses
PASSED = "passed"
FAILED = "failed"
TIMEOUT = "timeout"
ERROR = "error"
SKIPPED = "skipped"

# Process exit codes
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_SETUP_ERROR = 2


@dataclass
class ArtifactResult:
    """Result of instrumenting a single artifact."""
    name: str
    path: Path
    output_dir: Path
    status: str
    command: list[str] = field(default_factory=list)
    returncode: Optional[int] = None
    error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def passed(self) -> bool:
        return self.status == PASSED

    def __str__(self) -> str:
        if self.passed:
            return f"{self.name}: PASS ({self.duration_ms:.0f} ms)"
        if self.status == SKIPPED:
            return f"{self.name}: SKIPPED - {self.error}"
        return f"{self.name}: {self.status.upper()} - {self.error}"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": str(self.path),
            "output_dir": str(self.output_dir),
            "status": self.status,
            "command": self.command,
            "returncode": self.returncode,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 1),
        }


@dataclass
class RunReport:
    """
    Aggregate outcome of a coverage run.

    The run succeeds only if every artifact passed and the upload step,
    when it ran, succeeded. A skipped upload is not a failure.
    """
    artifacts: list[ArtifactResult] = field(default_factory=list)
    upload: Optional[UploadResult] = None
    upload_skipped_reason: Optional[str] = None

    @property
    def failed_artifacts(self) -> list[ArtifactResult]:
        return [r for r in self.artifacts if not r.passed]

    @property
    def failures(self) -> list[str]:
        """Human readable description of everything that went wrong."""
        failures = [str(r) for r in self.failed_artifacts]
        if self.upload is not None and not self.upload.succeeded:
            failures.append(f"upload: {self.upload.error}")
        return failures

    @property
    def succeeded(self) -> bool:
        return not self.failures

    @property
    def exit_code(self) -> int:
        return EXIT_OK if self.succeeded else EXIT_FAILURE

    def to_dict(self) -> dict:
        return {
            "success": self.succeeded,
            "artifacts": [r.to_dict() for r in self.artifacts],
            "upload": self.upload.to_dict() if self.upload is not None else None,
            "upload_skipped_reason": self.upload_skipped_reason,
            "failures": self.failures,
        }

    def write_json(self, path: Path) -> None:
        """Write the report as JSON, creating parent directories."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2))

