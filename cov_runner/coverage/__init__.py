"""Coverage instrumentation module - runs test binaries under kcov."""

from .instrumenter import CoverageInstrumenter, InstrumenterConfig

__all__ = ["CoverageInstrumenter", "InstrumenterConfig"]
