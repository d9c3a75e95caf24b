"""Error taxonomy for the VM manager.

Every error carries the HTTP status code the API layer renders it with.
"""


class VMManagerError(Exception):
    """Base class for all daemon errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthError(VMManagerError):
    """Missing or incorrect shared secret."""

    status_code = 401


class InvalidRequest(VMManagerError):
    status_code = 400


class NotFound(VMManagerError):
    """Unknown container, account or resource."""

    status_code = 404


class CapacityExhausted(VMManagerError):
    """No free host port left in a workload's range."""

    status_code = 503


class ContainerRuntimeError(VMManagerError):
    """The container runtime rejected or failed an operation."""

    status_code = 500


class ProvisioningPartialFailure(VMManagerError):
    """An FTP account or link step failed part-way."""

    status_code = 500


class BestEffortDispatchFailure(VMManagerError):
    """A command delivery strategy produced no usable result."""

    status_code = 502


class InvalidSchedule(VMManagerError):
    status_code = 400
