"""Custom exceptions for the microVM manager."""

from __future__ import annotations

from typing import Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class NotFound(ManagerError):
    """A record, image, kernel or mount tag does not exist."""


class VMNotFound(NotFound):
    pass


class ImageNotFound(NotFound):
    pass


class DefaultImageMissing(NotFound):
    """The default rootfs has not been downloaded yet."""


class KernelNotFound(NotFound):
    pass


class MountNotFound(NotFound):
    pass


class AlreadyExists(ManagerError):
    pass


class AlreadyRunning(ManagerError):
    pass


class NotRunning(ManagerError):
    pass


class VMRunning(ManagerError):
    """The operation needs the VM stopped (or an explicit force flag)."""


class Conflict(ManagerError):
    """A resource is still in use, e.g. a base image referenced by a VM."""


class AddressSpaceExhausted(ManagerError):
    pass


class ResourceBusy(ManagerError):
    """An exclusive image lock could not be acquired in time."""


class ValidationFailure(ManagerError):
    pass


class ExternalToolFailure(ManagerError):
    """An external command exited non-zero or could not be executed."""

    def __init__(self, tool: str, output: str = "", returncode: Optional[int] = None) -> None:
        self.tool = tool
        self.output = output.strip()
        self.returncode = returncode
        detail = f": {self.output}" if self.output else ""
        status = f" (exit {returncode})" if returncode is not None else ""
        super().__init__(f"{tool} failed{status}{detail}")
