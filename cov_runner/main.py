"""
cov-runner - Main CLI entry point.

Run:
1. Discover test binaries in the build directory
2. Run each one under kcov into <coverage-dir>/<binary name>
3. Upload the coverage directory once with the pinned uploader

A failing binary never stops the others (unless --fail-fast is given).
The exit code is 0 only if every binary and the upload succeeded.
"""

import argparse
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .coverage.instrumenter import (
    CoverageInstrumenter, InstrumenterConfig, DEFAULT_EXCLUDE_PATTERNS,
)
from .discovery.artifacts import Artifact, discover_artifacts
from .errors import CovRunnerError
from .report import ArtifactResult, RunReport, EXIT_SETUP_ERROR
from .upload.uploader import (
    Uploader, UploaderConfig, DEFAULT_TOKEN_ENV, DEFAULT_UPLOADER_ARGS,
)


@dataclass
class RunConfig:
    """Everything needed for one coverage run."""
    prefix: str
    build_dir: Path = Path("target/debug")
    coverage_dir: Path = Path("target/cov")
    instrumenter: InstrumenterConfig = field(default_factory=InstrumenterConfig)
    uploader: UploaderConfig = field(default_factory=UploaderConfig)
    upload: bool = True
    upload_only_on_success: bool = False
    jobs: int = 1
    fail_fast: bool = False
    run_timeout: Optional[float] = None
    report_path: Optional[Path] = None
    verbose: bool = False


def parse_args(argv=None):
    """
    Parse command line arguments into a RunConfig.

    Anything after a literal "--" is passed to every test binary.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    program_args = []
    if "--" in argv:
        split = argv.index("--")
        argv, program_args = argv[:split], argv[split + 1:]

    parser = argparse.ArgumentParser(
        prog="cov-runner",
        description="Run built test binaries under kcov and upload the coverage"
    )
    parser.add_argument("--prefix", required=True,
                        help="Name prefix of the test binaries (e.g. async_fs-)")
    parser.add_argument("--build-dir", default="target/debug",
                        help="Directory holding the test binaries")
    parser.add_argument("--coverage-dir", default="target/cov",
                        help="Root directory for coverage output")
    parser.add_argument("--exclude-pattern", action="append",
                        help="Comma-separated path patterns kcov should ignore "
                             f"(repeatable, default: {','.join(DEFAULT_EXCLUDE_PATTERNS)})")
    parser.add_argument("--no-verify", action="store_true",
                        help="Do not pass --verify to kcov")
    parser.add_argument("--kcov", default="kcov", help="kcov executable")
    parser.add_argument("--timeout", type=float, default=600.0,
                        help="Per-binary timeout in seconds (0 disables)")
    parser.add_argument("--run-timeout", type=float, default=None,
                        help="Overall timeout for the instrumentation phase in seconds")
    parser.add_argument("--jobs", type=int, default=1,
                        help="Number of binaries to instrument in parallel")
    parser.add_argument("--fail-fast", action="store_true",
                        help="Stop after the first failing binary")
    parser.add_argument("--upload", dest="upload", action="store_true", default=True,
                        help="Upload coverage when done (default)")
    parser.add_argument("--no-upload", dest="upload", action="store_false",
                        help="Skip the upload step")
    parser.add_argument("--upload-only-on-success", action="store_true",
                        help="Skip the upload if any binary failed")
    parser.add_argument("--uploader", default="codecov",
                        help="Locally installed uploader executable")
    parser.add_argument("--uploader-sha256", default=None,
                        help="Expected SHA-256 of the uploader executable")
    parser.add_argument("--uploader-arg", action="append",
                        help="Uploader argument, {coverage_root} is substituted "
                             f"(repeatable, default: {' '.join(DEFAULT_UPLOADER_ARGS)})")
    parser.add_argument("--token-env", default=DEFAULT_TOKEN_ENV,
                        help="Environment variable holding the upload token "
                             "(passed to the uploader as CODECOV_TOKEN)")
    parser.add_argument("--upload-retries", type=int, default=0,
                        help="Extra upload attempts on failure")
    parser.add_argument("--upload-timeout", type=float, default=300.0,
                        help="Upload timeout in seconds (0 disables)")
    parser.add_argument("--report", default=None, help="Write a JSON run report here")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args(argv)

    if args.jobs < 1:
        parser.error("--jobs must be at least 1")
    if args.upload_retries < 0:
        parser.error("--upload-retries must not be negative")
    if args.run_timeout is not None and args.run_timeout <= 0:
        parser.error("--run-timeout must be positive")
    if args.timeout < 0:
        parser.error("--timeout must not be negative")
    if args.upload_timeout < 0:
        parser.error("--upload-timeout must not be negative")

    if args.exclude_pattern is None:
        exclude_patterns = list(DEFAULT_EXCLUDE_PATTERNS)
    else:
        exclude_patterns = [
            p.strip()
            for value in args.exclude_pattern
            for p in value.split(",")
            if p.strip()
        ]

    return RunConfig(
        prefix=args.prefix,
        build_dir=Path(args.build_dir),
        coverage_dir=Path(args.coverage_dir),
        instrumenter=InstrumenterConfig(
            kcov=args.kcov,
            exclude_patterns=exclude_patterns,
            verify=not args.no_verify,
            timeout=args.timeout or None,
            program_args=program_args,
        ),
        uploader=UploaderConfig(
            uploader=args.uploader,
            sha256=args.uploader_sha256,
            args=args.uploader_arg if args.uploader_arg is not None
            else list(DEFAULT_UPLOADER_ARGS),
            token_env=args.token_env,
            retries=args.upload_retries,
            timeout=args.upload_timeout or None,
        ),
        upload=args.upload,
        upload_only_on_success=args.upload_only_on_success,
        jobs=args.jobs,
        fail_fast=args.fail_fast,
        run_timeout=args.run_timeout,
        report_path=Path(args.report) if args.report else None,
        verbose=args.verbose,
    )


def log(msg, verbose=True):
    if verbose:
        print(f"[cov-runner] {msg}")


def instrument_all(
    instrumenter: CoverageInstrumenter,
    artifacts: list[Artifact],
    jobs: int = 1,
    fail_fast: bool = False,
    run_timeout: Optional[float] = None,
    verbose: bool = False,
) -> list[ArtifactResult]:
    """
    Instrument every artifact and collect one result per artifact.

    Artifacts write to disjoint output directories, so with jobs > 1 they
    run in a thread pool. Results come back in the order of `artifacts`.
    Artifacts not started before the run deadline, or after a failure in
    fail-fast mode, are recorded as skipped.
    """
    deadline = time.monotonic() + run_timeout if run_timeout else None
    stop = threading.Event()

    def run_one(artifact: Artifact) -> ArtifactResult:
        if stop.is_set():
            return instrumenter.skip(artifact, "an earlier binary failed (--fail-fast)")

        timeout = instrumenter.config.timeout
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return instrumenter.skip(artifact, "run timeout reached")
            timeout = remaining if timeout is None else min(timeout, remaining)

        log(f"Collecting coverage for {artifact.name}...", verbose)
        result = instrumenter.instrument(artifact, timeout=timeout)
        log(f"  {result}", verbose)

        if fail_fast and not result.passed:
            stop.set()
        return result

    with ThreadPoolExecutor(max_workers=jobs) as executor:
        return list(executor.map(run_one, artifacts))


def run(config: RunConfig) -> RunReport:
    """
    Execute a full coverage run.

    Raises:
        DiscoveryError: If the build directory cannot be listed
    """
    verbose = config.verbose

    # --- Phase 1: Discovery ---
    log("Phase 1: Discovery", verbose)
    artifacts = discover_artifacts(config.build_dir, config.prefix)
    log(f"Found {len(artifacts)} binaries matching '{config.prefix}*' in "
        f"{config.build_dir}: {[a.name for a in artifacts]}", verbose)

    # The coverage root must exist even with no artifacts, the uploader scans it
    try:
        config.coverage_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise CovRunnerError(
            f"Cannot create coverage directory {config.coverage_dir}: {e}"
        ) from e

    # --- Phase 2: Instrumentation ---
    log("Phase 2: Coverage collection", verbose)
    instrumenter = CoverageInstrumenter(
        config.coverage_dir, config.instrumenter, verbose=verbose,
    )
    report = RunReport()
    report.artifacts = instrument_all(
        instrumenter,
        artifacts,
        jobs=config.jobs,
        fail_fast=config.fail_fast,
        run_timeout=config.run_timeout,
        verbose=verbose,
    )

    # --- Phase 3: Upload ---
    if not config.upload:
        report.upload_skipped_reason = "upload disabled"
    elif config.upload_only_on_success and report.failed_artifacts:
        report.upload_skipped_reason = (
            f"{len(report.failed_artifacts)} binaries did not pass"
        )
    else:
        log("Phase 3: Upload", verbose)
        report.upload = Uploader(config.uploader, verbose=verbose).upload(
            config.coverage_dir
        )

    if report.upload_skipped_reason:
        log(f"Upload skipped: {report.upload_skipped_reason}", verbose)

    return report


def print_summary(report: RunReport) -> None:
    """Print the end-of-run summary."""
    print(f"\n{'=' * 60}")
    print("Coverage run summary")
    print(f"{'=' * 60}")
    passed = len(report.artifacts) - len(report.failed_artifacts)
    print(f"Binaries: {passed}/{len(report.artifacts)} passed")
    for r in report.artifacts:
        print(f"  {r}")
    if report.upload is not None:
        print(str(report.upload))
    elif report.upload_skipped_reason:
        print(f"upload: skipped ({report.upload_skipped_reason})")
    print("Result: " + ("SUCCESS" if report.succeeded else "FAILURE"))


def main(argv=None):
    config = parse_args(argv)

    try:
        report = run(config)
    except CovRunnerError as e:
        print(f"Error: {e}")
        return EXIT_SETUP_ERROR

    print_summary(report)

    if config.report_path is not None:
        try:
            report.write_json(config.report_path)
        except OSError as e:
            print(f"Error: Cannot write report to {config.report_path}: {e}")
            return EXIT_SETUP_ERROR
        log(f"Report saved to {config.report_path}", config.verbose)

    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
