"""Exception taxonomy shared by workers, adapters and the resilience layer."""

from __future__ import annotations


class LaunchpadError(Exception):
    """Base class for all launchpad errors."""


class TransientRemoteError(LaunchpadError):
    """A remote call failed in a way that may succeed if repeated."""


class RemoteServiceError(LaunchpadError):
    """A remote API answered with an application-level error (e.g. GraphQL errors)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CircuitOpenError(LaunchpadError):
    """Raised without invoking the remote call while a breaker is open."""

    def __init__(self, name: str):
        super().__init__(f"Circuit breaker '{name}' is open")
        self.name = name


class ValidationFailedError(LaunchpadError):
    """Generated code failed static checks."""


class HardExternalError(LaunchpadError):
    """An external platform reported a terminal failure. Fatal to the job."""


class DeploymentFailedError(HardExternalError):
    """The compute platform reported FAILED or CRASHED."""


class DeploymentTimeoutError(HardExternalError):
    """The compute platform did not reach a terminal status in time."""


class SourcePushError(HardExternalError):
    """Pushing files to the source-control remote was rejected."""


class NonRetryableJobError(LaunchpadError):
    """Programming or data errors. The job goes straight to the dead-letter stream."""


class ProjectNotFoundError(NonRetryableJobError):
    def __init__(self, project_id: str):
        super().__init__(f"Project {project_id} not found")
        self.project_id = project_id


class MessageNotFoundError(NonRetryableJobError):
    def __init__(self, message_id: str):
        super().__init__(f"Message {message_id} not found")
        self.message_id = message_id


class JobTimeoutError(LaunchpadError):
    """A job exceeded its wall-clock timeout."""


class JobInterruptedError(LaunchpadError):
    """A job was cancelled before it finished, by its timeout or a worker shutdown."""


class UnsupportedModeError(LaunchpadError):
    """The code generation service does not support the requested mode."""
