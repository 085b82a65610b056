"""Concurrent AI-driven edits, bulk edits and expansions for hosted repositories."""

__version__ = "0.1.0"
