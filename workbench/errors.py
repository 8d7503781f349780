"""Error taxonomy for the workbench service lifecycle."""

from __future__ import annotations


class WorkbenchError(Exception):
    """Base class for failures contained to a single workbench operation."""

    kind = "WorkbenchError"


class BinaryNotFoundError(WorkbenchError):
    """Raised when a required executable is absent from PATH and known locations."""

    kind = "BinaryNotFound"

    def __init__(self, binary: str, hint: str | None = None):
        self.binary = binary
        self.hint = hint
        message = f"{binary} binary not found on this system."
        if hint:
            message = f"{message} {hint}"
        super().__init__(message)


class PortUnavailableError(WorkbenchError):
    """Raised when no free port exists in a scanned range."""

    kind = "PortUnavailable"


class PlatformCommandFailedError(WorkbenchError):
    """Raised when an OS port-introspection or kill command cannot run."""

    kind = "PlatformCommandFailed"


class SpawnFailedError(WorkbenchError):
    """Raised when the OS refuses to create a child process."""

    kind = "SpawnFailed"


class AlreadyRunningError(WorkbenchError):
    """Raised when launching a service that already has a live handle."""

    kind = "AlreadyRunning"


class NotRunningError(WorkbenchError):
    """Raised when stopping a service that has no registered handle."""

    kind = "NotRunning"


class UnreachableError(WorkbenchError):
    """Raised when a health probe fails to connect within its timeout."""

    kind = "Unreachable"

    def __init__(self, address: str, message: str | None = None):
        self.address = address
        super().__init__(message or f"not responding at http://{address}")


class DownloadInterruptedError(WorkbenchError):
    """Raised when a pull's process or connection ends abnormally."""

    kind = "DownloadInterrupted"


class AlreadyDownloadingError(WorkbenchError):
    """Raised when a pull is requested while another one is in flight."""

    kind = "AlreadyDownloading"


class NoActiveDownloadError(WorkbenchError):
    """Raised when cancelling with no download in flight."""

    kind = "NoActiveDownload"


class InstallFailedError(WorkbenchError):
    """Raised when an install step exits with a non-zero status."""

    kind = "InstallFailed"
