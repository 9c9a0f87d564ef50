"""Built-in verifiers. Importing this package registers them in the default registry."""

from stagegate.verification_plane.verifiers.artifact_presence import ArtifactPresenceVerifier
from stagegate.verification_plane.verifiers.base import (
    DEFAULT_VERIFIER_REGISTRY,
    CommandExecutor,
    CommandResult,
    CommandSpec,
    CommandVerifier,
    LocalSubprocessExecutor,
    Verifier,
    VerifierCrashError,
    VerifierError,
    VerifierRegistry,
    VerifierTimeoutError,
    register_builtin_verifier,
)
from stagegate.verification_plane.verifiers.document_build import DocumentBuildVerifier
from stagegate.verification_plane.verifiers.script_execution import ScriptExecutionVerifier

__all__ = [
    "DEFAULT_VERIFIER_REGISTRY",
    "ArtifactPresenceVerifier",
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "CommandVerifier",
    "DocumentBuildVerifier",
    "LocalSubprocessExecutor",
    "ScriptExecutionVerifier",
    "Verifier",
    "VerifierCrashError",
    "VerifierError",
    "VerifierRegistry",
    "VerifierTimeoutError",
    "register_builtin_verifier",
]
