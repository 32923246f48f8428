"""Dependency-aware plan execution with verification and self-correction."""

__version__ = "0.1.0"
