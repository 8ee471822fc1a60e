"""
Coverage instrumentation of test binaries using kcov.

This module handles:
1. Preparing a fresh per-artifact output directory
2. Building the kcov command line
3. Running the artifact under kcov with a timeout, output going to
   kcov.log in the output directory
4. Turning the outcome into an ArtifactResult

kcov writes its own report format into the output directory. We never
look inside it; the uploader consumes it later.
"""

import os
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..discovery.artifacts import Artifact
from ..errors import InstrumentationError
from ..report import ArtifactResult, ERROR, FAILED, PASSED, SKIPPED, TIMEOUT

DEFAULT_EXCLUDE_PATTERNS = ["/.cargo", "/usr/lib"]

# Combined stdout/stderr of kcov and the test binary, kept per artifact
KCOV_LOG_NAME = "kcov.log"


@dataclass
class InstrumenterConfig:
    """Configuration for the coverage instrumenter."""
    kcov: str = "kcov"
    exclude_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS)
    )
    verify: bool = True
    timeout: Optional[float] = 600.0
    program_args: list[str] = field(default_factory=list)


class CoverageInstrumenter:
    """
    Runs each artifact under kcov, one output directory per artifact.

    Output directories are refreshed before every run, so measuring the
    same build twice replaces the old data instead of merging into it.
    """

    def __init__(
        self,
        coverage_root: Path,
        config: Optional[InstrumenterConfig] = None,
        verbose: bool = False
    ):
        """
        Initialize the instrumenter.

        Args:
            coverage_root: Root directory for per-artifact coverage output
            config: Configuration options
            verbose: Enable verbose logging
        """
        self.coverage_root = Path(coverage_root)
        self.config = config or InstrumenterConfig()
        self.verbose = verbose

    def _log(self, msg: str) -> None:
        """Log a message if verbose mode is enabled."""
        if self.verbose:
            print(f"[Instrumenter] {msg}")

    def resolve_kcov(self) -> str:
        """
        Locate the kcov executable.

        Returns:
            Absolute path to kcov

        Raises:
            InstrumentationError: If kcov cannot be found or is not executable
        """
        resolved = shutil.which(self.config.kcov)
        if resolved is None:
            raise InstrumentationError(
                f"Instrumenter not found or not executable: {self.config.kcov}"
            )
        return resolved

    def build_command(self, artifact: Artifact, output_dir: Path) -> list[str]:
        """
        Build the kcov command line for an artifact.

        Format:
            kcov [--exclude-pattern=a,b] [--verify] <output_dir> <artifact> [args...]
        """
        cmd = [self.config.kcov]
        if self.config.exclude_patterns:
            cmd.append("--exclude-pattern=" + ",".join(self.config.exclude_patterns))
        if self.config.verify:
            cmd.append("--verify")
        cmd.append(str(output_dir))
        cmd.append(str(artifact.path))
        cmd.extend(self.config.program_args)
        return cmd

    def prepare_output_dir(self, artifact: Artifact) -> Path:
        """
        Create an empty output directory for the artifact.

        Data left over from a previous run is removed first.
        """
        output_dir = artifact.output_dir(self.coverage_root)
        if output_dir.exists():
            self._log(f"Clearing previous coverage data in {output_dir}")
            if output_dir.is_dir() and not output_dir.is_symlink():
                shutil.rmtree(output_dir)
            else:
                output_dir.unlink()
        output_dir.mkdir(parents=True)
        return output_dir

    def skip(self, artifact: Artifact, reason: str) -> ArtifactResult:
        """Record an artifact that was never run."""
        return ArtifactResult(
            name=artifact.name,
            path=artifact.path,
            output_dir=artifact.output_dir(self.coverage_root),
            status=SKIPPED,
            error=reason,
        )

    def instrument(
        self,
        artifact: Artifact,
        timeout: Optional[float] = None
    ) -> ArtifactResult:
        """
        Run a single artifact under kcov.

        Failures are reported through the returned result, never raised,
        so the caller can carry on with the remaining artifacts.

        Args:
            artifact: The test binary to measure
            timeout: Override for the configured per-artifact timeout

        Returns:
            ArtifactResult describing the outcome
        """
        if timeout is None:
            timeout = self.config.timeout

        output_dir = artifact.output_dir(self.coverage_root)
        cmd = self.build_command(artifact, output_dir)
        start_time = time.time()

        def result(status: str, returncode=None, error=None) -> ArtifactResult:
            return ArtifactResult(
                name=artifact.name,
                path=artifact.path,
                output_dir=output_dir,
                status=status,
                command=cmd,
                returncode=returncode,
                error=error,
                duration_ms=(time.time() - start_time) * 1000,
            )

        try:
            cmd[0] = self.resolve_kcov()
            self.prepare_output_dir(artifact)
        except (InstrumentationError, OSError) as e:
            return result(ERROR, error=str(e))

        self._log(f"Running: {' '.join(cmd)}")

        # kcov and the test binary share a new process group so a timeout
        # can take down the binary too, not just kcov
        log_file = output_dir / KCOV_LOG_NAME
        try:
            with open(log_file, 'w') as log:
                proc = subprocess.Popen(
                    cmd,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True
                )
        except OSError as e:
            return result(ERROR, error=str(e))

        try:
            returncode = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._kill_group(proc)
            return result(TIMEOUT, error=f"Timed out after {timeout:g}s")

        if returncode != 0:
            error = f"kcov exited with code {returncode}"
            last_line = self._last_log_line(log_file)
            if last_line:
                error += f": {last_line}"
            return result(FAILED, returncode=returncode, error=error)

        return result(PASSED, returncode=0)

    def _kill_group(self, proc: subprocess.Popen) -> None:
        """Kill kcov's whole process group and reap kcov."""
        self._log(f"Killing process group {proc.pid}")
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc.wait()

    @staticmethod
    def _last_log_line(log_file: Path) -> str:
        """Last non-empty line of the kcov log, or an empty string."""
        try:
            text = log_file.read_text(errors="replace")
        except OSError:
            return ""
        lines = [line for line in text.splitlines() if line.strip()]
        return lines[-1].strip() if lines else ""
