"""
Upload of aggregated coverage results.

The uploader is always a local, pinned executable (the codecov CLI by
default). It is never downloaded and executed on the fly. If a SHA-256
digest is configured, the file on disk must match it before it is run.

The authentication token is taken from a configurable environment
variable and handed to the uploader as CODECOV_TOKEN in its environment,
never in its arguments.
"""

import hashlib
import os
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..errors import UploadError

COVERAGE_ROOT_PLACEHOLDER = "{coverage_root}"
DEFAULT_UPLOADER_ARGS = ["-s", COVERAGE_ROOT_PLACEHOLDER]
DEFAULT_TOKEN_ENV = "CODECOV_TOKEN"

# Variable the uploader itself reads the token from
UPLOADER_TOKEN_ENV = "CODECOV_TOKEN"

REMOTE_SCHEMES = ("http://", "https://", "ftp://")


@dataclass
class UploaderConfig:
    """Configuration for the upload step."""
    uploader: str = "codecov"
    sha256: Optional[str] = None
    args: list[str] = field(default_factory=lambda: list(DEFAULT_UPLOADER_ARGS))
    token_env: str = DEFAULT_TOKEN_ENV
    uploader_token_env: str = UPLOADER_TOKEN_ENV
    retries: int = 0
    retry_delay: float = 5.0
    timeout: Optional[float] = 300.0


@dataclass
class UploadResult:
    """Result of the upload step."""
    command: list[str] = field(default_factory=list)
    returncode: Optional[int] = None
    attempts: int = 0
    error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.returncode == 0

    def __str__(self) -> str:
        if self.succeeded:
            return f"upload: OK ({self.attempts} attempt(s))"
        return f"upload: FAILED after {self.attempts} attempt(s) - {self.error}"

    def to_dict(self) -> dict:
        return {
            "command": self.command,
            "returncode": self.returncode,
            "attempts": self.attempts,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 1),
        }


def file_sha256(path: Path) -> str:
    """Return the hex SHA-256 digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


class Uploader:
    """
    Runs the pinned uploader once against the coverage root.

    Usage:
        uploader = Uploader(UploaderConfig(sha256="ab12..."))
        result = uploader.upload(Path("target/cov"))
    """

    def __init__(self, config: Optional[UploaderConfig] = None, verbose: bool = False):
        self.config = config or UploaderConfig()
        self.verbose = verbose

    def _log(self, msg: str) -> None:
        """Log a message if verbose mode is enabled."""
        if self.verbose:
            print(f"[Uploader] {msg}")

    def resolve(self) -> Path:
        """
        Locate and verify the uploader executable.

        Returns:
            Path to the verified uploader

        Raises:
            UploadError: If the uploader is remote, missing, or fails
                checksum verification
        """
        uploader = self.config.uploader
        if uploader.lower().startswith(REMOTE_SCHEMES):
            raise UploadError(
                f"Refusing to run a remote uploader ({uploader}); "
                "install it locally and pass its path"
            )

        resolved = shutil.which(uploader)
        if resolved is None:
            raise UploadError(f"Uploader not found or not executable: {uploader}")
        path = Path(resolved)

        if self.config.sha256:
            actual = file_sha256(path)
            expected = self.config.sha256.strip().lower()
            if actual != expected:
                raise UploadError(
                    f"Checksum mismatch for {path}: expected {expected}, got {actual}"
                )
            self._log(f"Verified {path} (sha256 {actual})")

        return path

    def build_command(self, uploader: Path, coverage_root: Path) -> list[str]:
        """Build the uploader command, substituting {coverage_root} in arguments."""
        args = [
            a.replace(COVERAGE_ROOT_PLACEHOLDER, str(coverage_root))
            for a in self.config.args
        ]
        return [str(uploader)] + args

    def build_env(self) -> dict[str, str]:
        """
        Environment for the uploader process.

        The token is read from config.token_env and exported under the
        name the uploader reads (config.uploader_token_env). When the
        source variable is unset, no token is passed at all.
        """
        env = dict(os.environ)
        token = env.get(self.config.token_env)
        env.pop(self.config.uploader_token_env, None)
        if token:
            env[self.config.uploader_token_env] = token
        else:
            print(
                f"Warning: {self.config.token_env} is not set, "
                "uploading without a token"
            )
        return env

    def upload(self, coverage_root: Path) -> UploadResult:
        """
        Upload the coverage root with bounded retries.

        Errors are reported through the returned result. Local coverage
        data is never touched.

        Args:
            coverage_root: Directory holding one subdirectory per artifact

        Returns:
            UploadResult describing the final attempt
        """
        coverage_root = Path(coverage_root)
        start_time = time.time()
        result = UploadResult()

        def finish(error: Optional[str] = None) -> UploadResult:
            result.error = error
            result.duration_ms = (time.time() - start_time) * 1000
            return result

        if not coverage_root.is_dir():
            return finish(f"Coverage directory does not exist: {coverage_root}")

        try:
            uploader = self.resolve()
        except (UploadError, OSError) as e:
            return finish(str(e))

        result.command = self.build_command(uploader, coverage_root)
        env = self.build_env()
        max_attempts = 1 + max(0, self.config.retries)

        error = None
        for attempt in range(1, max_attempts + 1):
            result.attempts = attempt
            self._log(f"Attempt {attempt}/{max_attempts}: {' '.join(result.command)}")

            try:
                proc = subprocess.run(
                    result.command,
                    env=env,
                    capture_output=True,
                    text=True,
                    errors="replace",
                    timeout=self.config.timeout
                )
            except subprocess.TimeoutExpired:
                result.returncode = None
                error = f"Uploader timed out after {self.config.timeout:g}s"
            except OSError as e:
                # Not retryable: the binary itself is unusable
                result.returncode = None
                return finish(str(e))
            else:
                result.returncode = proc.returncode
                if proc.returncode == 0:
                    return finish()
                output = (proc.stderr or proc.stdout).strip()
                error = f"Uploader exited with code {proc.returncode}"
                if output:
                    error += f": {output.splitlines()[-1]}"

            self._log(error)
            if attempt < max_attempts and self.config.retry_delay > 0:
                time.sleep(self.config.retry_delay)

        return finish(error)
