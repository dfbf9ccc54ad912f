"""Failure taxonomy for the message pipeline."""
from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline failures."""


class SecurityRejection(PipelineError):
    """Input was flagged as unsafe and must be rephrased by the user."""

    def __init__(self, message: str, flags: Optional[list] = None):
        super().__init__(message)
        self.flags = flags or []


class UpstreamUnavailable(PipelineError):
    """The completion API failed or timed out."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class PersistenceConflict(PipelineError):
    """A unique key was violated by a concurrent insert."""


class PersistenceFailure(PipelineError):
    """The store could not be reached or the statement failed."""
