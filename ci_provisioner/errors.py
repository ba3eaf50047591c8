"""Error taxonomy for the provisioning service.

Only ValidationError and NotFoundError ever reach an API caller. Runner-side
failures are absorbed into the job record (status FAILED plus message), and
TransportError only ever closes the subscription it was raised for.
"""


class ProvisioningError(Exception):
    """Base class for all service errors."""


class ValidationError(ProvisioningError):
    """Bad tool, host or request input. User-correctable."""


class NotFoundError(ProvisioningError):
    """Unknown job id."""


class IllegalTransitionError(ProvisioningError):
    """A runner reported a status that is not a valid successor."""

    def __init__(self, job_id: str, current: str, requested: str):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"illegal transition {current} -> {requested} for job {job_id}"
        )


class RunnerStartError(ProvisioningError):
    """The runner for a job could not be launched."""


class TransportError(ProvisioningError):
    """A log stream broke before its end-of-stream signal."""
