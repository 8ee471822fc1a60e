"""
cov-runner - Coverage collection for built test binaries

Discovers executable test binaries in a build directory, runs each one
under kcov with its own output directory, then hands the results to a
pinned local uploader in a single final step.
"""

__version__ = "0.1.0"
