from __future__ import annotations


class KromoliveError(Exception):
    """Base error for the kromolive engine."""


class InvalidConfigError(KromoliveError):
    """Raised when settings or a source reference cannot be validated."""


class RenderError(KromoliveError):
    """Raised when audio for a source reference cannot be fetched, rendered or decoded."""


class RegistrationError(KromoliveError):
    """Raised when an evaluator rejects or times out registering samples."""


class EvaluationError(KromoliveError):
    """Raised when pattern code fails to evaluate."""


class SampleNameCollisionError(KromoliveError):
    """Raised when a sample bank would hand out a name that is already live."""


class ResourceRevokedError(KromoliveError):
    """Raised when a revoked resource handle is resolved or revoked again."""


class UnitClosedError(KromoliveError):
    """Raised when an operation targets a unit that has been cleaned up."""
