"""Artifact discovery - finds the test binaries to measure."""

from .artifacts import Artifact, discover_artifacts, is_eligible

__all__ = ["Artifact", "discover_artifacts", "is_eligible"]
