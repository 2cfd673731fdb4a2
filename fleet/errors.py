"""
Exception types shared across the fleet manager.

Transport problems (ssh could not connect, timed out) are raised as
SshError subclasses. A remote command that ran but exited nonzero is only
an error when the caller did not allow failure; it is then raised as
RemoteCommandError carrying the full result.
"""


class FleetError(Exception):
    """Base class for all fleet manager errors."""


class SshError(FleetError):
    """Transport-level SSH failure."""


class SshConnectionError(SshError):
    """ssh could not connect or authenticate."""


class SshTimeoutError(SshError):
    """The remote call exceeded its wall-clock timeout and was killed."""

    def __init__(self, timeout: float, command: str = ""):
        self.timeout = timeout
        self.command = command
        super().__init__(f"SSH command timed out after {timeout}s")


class UploadError(FleetError):
    """A file could not be copied to the remote host."""


class RemoteCommandError(FleetError):
    """A remote command exited nonzero and failure was not allowed."""

    def __init__(self, message: str, result=None):
        self.result = result
        super().__init__(message)


class InvalidUnixUsernameError(FleetError):
    """The OS account name is unsafe to use in a shell command."""


class ServerNotFoundError(FleetError):
    """No server row exists for the requested id."""


class PackageOperationError(FleetError):
    """An irrecoverable precondition failed for a single package job."""
