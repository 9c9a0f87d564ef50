"""
stagegate — verification plane public API.

File: src/stagegate/verification_plane/__init__.py
Last updated: 2026-10-19

Purpose
- Export the verifier contract, the built-in verifiers and the runner used by the
  control plane.
"""

from stagegate.verification_plane.runner import (
    FAILURE_DEDUCTION,
    VerificationRunner,
    crash_finding,
    timeout_finding,
)
from stagegate.verification_plane.verifiers import (
    DEFAULT_VERIFIER_REGISTRY,
    ArtifactPresenceVerifier,
    DocumentBuildVerifier,
    ScriptExecutionVerifier,
    Verifier,
    VerifierCrashError,
    VerifierError,
    VerifierRegistry,
    VerifierTimeoutError,
)

__all__ = [
    "DEFAULT_VERIFIER_REGISTRY",
    "FAILURE_DEDUCTION",
    "ArtifactPresenceVerifier",
    "DocumentBuildVerifier",
    "ScriptExecutionVerifier",
    "VerificationRunner",
    "Verifier",
    "VerifierCrashError",
    "VerifierError",
    "VerifierRegistry",
    "VerifierTimeoutError",
    "crash_finding",
    "timeout_finding",
]
