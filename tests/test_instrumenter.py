#!/usr/bin/env python3
"""
Tests for the kcov instrumenter.

A fake kcov script is used, so these tests do not need kcov installed.

Run with: python -m pytest tests/test_instrumenter.py -v
Or directly: python tests/test_instrumenter.py
"""

import shutil
import sys
import tempfile
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from cov_runner.coverage.instrumenter import CoverageInstrumenter, InstrumenterConfig
from cov_runner.discovery.artifacts import Artifact
from cov_runner.report import ERROR, FAILED, PASSED, SKIPPED, TIMEOUT
from tests.fake_tools import make_binary, make_forking_kcov, make_kcov, process_alive


class TestBuildCommand:
    """Tests for kcov command construction."""

    def setup_method(self):
        self.artifact = Artifact(path=Path("target/debug/async_fs-1a2b"), name="async_fs-1a2b")
        self.output_dir = Path("target/cov/async_fs-1a2b")

    def test_default_command(self):
        """Defaults match the classic kcov invocation."""
        instrumenter = CoverageInstrumenter(Path("target/cov"))
        cmd = instrumenter.build_command(self.artifact, self.output_dir)

        assert cmd == [
            "kcov",
            "--exclude-pattern=/.cargo,/usr/lib",
            "--verify",
            "target/cov/async_fs-1a2b",
            "target/debug/async_fs-1a2b",
        ]

    def test_no_exclusions_no_verify(self):
        config = InstrumenterConfig(exclude_patterns=[], verify=False)
        instrumenter = CoverageInstrumenter(Path("target/cov"), config)
        cmd = instrumenter.build_command(self.artifact, self.output_dir)

        assert cmd == ["kcov", "target/cov/async_fs-1a2b", "target/debug/async_fs-1a2b"]

    def test_program_args_follow_artifact(self):
        config = InstrumenterConfig(kcov="/opt/kcov", program_args=["--nocapture"])
        instrumenter = CoverageInstrumenter(Path("target/cov"), config)
        cmd = instrumenter.build_command(self.artifact, self.output_dir)

        assert cmd[0] == "/opt/kcov"
        assert cmd[-2:] == ["target/debug/async_fs-1a2b", "--nocapture"]


class TestInstrument:
    """Tests for running artifacts under the (fake) instrumenter."""

    def setup_method(self):
        self.workdir = Path(tempfile.mkdtemp(prefix="cov_instrument_test_"))
        self.build_dir = self.workdir / "debug"
        self.coverage_root = self.workdir / "cov"
        self.kcov = make_kcov(self.workdir / "tools")

    def teardown_method(self):
        shutil.rmtree(self.workdir, ignore_errors=True)

    def _instrumenter(self, **kwargs) -> CoverageInstrumenter:
        config = InstrumenterConfig(kcov=str(self.kcov), **kwargs)
        return CoverageInstrumenter(self.coverage_root, config)

    def _artifact(self, name: str, **kwargs) -> Artifact:
        return Artifact.from_path(make_binary(self.build_dir, name, **kwargs))

    def test_passing_artifact(self):
        artifact = self._artifact("app-ok")
        result = self._instrumenter().instrument(artifact)

        assert result.status == PASSED
        assert result.passed
        assert result.returncode == 0
        assert result.output_dir == self.coverage_root / "app-ok"
        assert (self.coverage_root / "app-ok" / "ran.txt").exists()

    def test_failing_artifact(self):
        artifact = self._artifact("app-bad", exit_code=3)
        result = self._instrumenter().instrument(artifact)

        assert result.status == FAILED
        assert not result.passed
        assert result.returncode == 3
        assert "code 3" in result.error

    def test_timeout(self):
        artifact = self._artifact("app-slow", sleep=10)
        result = self._instrumenter(timeout=0.5).instrument(artifact)

        assert result.status == TIMEOUT
        assert result.returncode is None
        assert "Timed out" in result.error

    def test_timeout_override(self):
        artifact = self._artifact("app-slow", sleep=10)
        result = self._instrumenter(timeout=None).instrument(artifact, timeout=0.5)

        assert result.status == TIMEOUT

    def test_timeout_kills_test_binary(self):
        """A timeout takes down the binary kcov started, not only kcov itself."""
        self.kcov = make_forking_kcov(self.workdir / "tools")
        pid_file = self.workdir / "binary.pid"
        artifact = self._artifact("app-hang", sleep=30, pid_file=pid_file)

        result = self._instrumenter(timeout=1).instrument(artifact)

        assert result.status == TIMEOUT
        pid = int(pid_file.read_text().strip())
        deadline = time.monotonic() + 5
        while process_alive(pid) and time.monotonic() < deadline:
            time.sleep(0.1)
        assert not process_alive(pid)

    def test_output_written_to_log(self):
        artifact = self._artifact("app-chatty", output="hello from app-chatty")
        result = self._instrumenter().instrument(artifact)

        assert result.passed
        log_file = self.coverage_root / "app-chatty" / "kcov.log"
        assert "hello from app-chatty" in log_file.read_text()

    def test_failure_reports_last_output_line(self):
        artifact = self._artifact("app-bad", exit_code=3, output="assertion failed: left == right")
        result = self._instrumenter().instrument(artifact)

        assert result.status == FAILED
        assert result.error == "kcov exited with code 3: assertion failed: left == right"

    def test_missing_kcov(self):
        artifact = self._artifact("app-ok")
        config = InstrumenterConfig(kcov=str(self.workdir / "no-such-kcov"))
        result = CoverageInstrumenter(self.coverage_root, config).instrument(artifact)

        assert result.status == ERROR
        assert "not found" in result.error

    def test_output_dir_refreshed(self):
        """Stale files from a previous run are removed before instrumenting."""
        artifact = self._artifact("app-ok")
        stale = self.coverage_root / "app-ok" / "stale.json"
        stale.parent.mkdir(parents=True)
        stale.write_text("{}")

        result = self._instrumenter().instrument(artifact)

        assert result.passed
        assert not stale.exists()
        assert (self.coverage_root / "app-ok" / "ran.txt").exists()

    def test_skip(self):
        artifact = self._artifact("app-ok")
        result = self._instrumenter().skip(artifact, "run timeout reached")

        assert result.status == SKIPPED
        assert not result.passed
        assert not (self.coverage_root / "app-ok").exists()


def run_tests():
    """Run all tests and report results."""
    test_classes = [TestBuildCommand, TestInstrument]

    total = 0
    passed = 0
    failed = []

    for test_class in test_classes:
        print(f"\n{test_class.__name__}")
        print("-" * 40)

        instance = test_class()
        test_methods = [m for m in dir(instance) if m.startswith('test_')]

        for method_name in test_methods:
            total += 1
            instance.setup_method()
            try:
                getattr(instance, method_name)()
                print(f"  ✓ {method_name}")
                passed += 1
            except Exception as e:
                print(f"  ✗ {method_name}: {e}")
                failed.append((f"{test_class.__name__}.{method_name}", str(e)))
            finally:
                if hasattr(instance, "teardown_method"):
                    instance.teardown_method()

    print(f"\nResults: {passed}/{total} tests passed")

    if failed:
        print("\nFailed tests:")
        for name, error in failed:
            print(f"  - {name}: {error}")
        return 1

    print("\nAll tests passed!")
    return 0


if __name__ == "__main__":
    sys.exit(run_tests())
