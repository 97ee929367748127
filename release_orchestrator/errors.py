"""Exception hierarchy for release orchestration failures."""

from __future__ import annotations


class ReleaseError(Exception):
    """Base class for every failure surfaced to a run's terminal status."""


class ConfigurationError(ReleaseError):
    """Invalid topology or routing configuration; fatal at setup."""


class SourceFetchError(ReleaseError):
    """The source revision could not be fetched."""


class BuildError(ReleaseError):
    """The build collaborator failed, timed out or returned an unexpected tag."""


class ArtifactNotFoundError(ReleaseError):
    """A referenced artifact tag is absent from the artifact store."""


class HealthCheckTimeoutError(ReleaseError):
    """Shadow tasks did not report healthy within the allowed window."""


class DeployLaunchError(ReleaseError):
    """Tasks could not be launched or updated on the compute platform."""


class DeploymentAbortedError(ReleaseError):
    """A run was aborted externally before reaching a terminal state."""


class ConcurrencyConflictError(ReleaseError):
    """A conflicting pipeline run or traffic shift is already in flight."""


class InvalidTransitionError(ReleaseError):
    """A state machine was asked to move to a state it cannot reach."""


__all__ = [
    "ArtifactNotFoundError",
    "BuildError",
    "ConcurrencyConflictError",
    "ConfigurationError",
    "DeployLaunchError",
    "DeploymentAbortedError",
    "HealthCheckTimeoutError",
    "InvalidTransitionError",
    "ReleaseError",
    "SourceFetchError",
]
