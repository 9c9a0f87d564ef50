"""
stagegate — package root

File: src/stagegate/__init__.py
Last updated: 2026-10-19

Purpose
- Package root for the quality-gated task orchestrator.
- Tasks move through Plan, Execute, Verify, Score and Commit/Reject stages; pluggable
  verifiers produce findings, a rubric turns findings into a 0-100 score, and a per-track
  gate decides whether the task commits, retries or escalates.

Import boundary rules
- No side effects at import time (no config loading, no logging init).
- Heavy submodules are imported by callers, not re-exported here.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
