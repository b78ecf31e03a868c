"""Architectural conformance checking and phased refactoring."""

__version__ = "0.4.0"
