import asyncio


class DeploymentError(Exception):
    """Base class for everything the engine raises on purpose"""


class ConfigurationError(DeploymentError):
    pass


class ValidationError(DeploymentError):
    pass


class PlanError(DeploymentError):
    pass


class FleetAPIError(DeploymentError):
    """Non-2xx answer from the fleet API"""

    RETRYABLE_STATUSES = {408, 429, 500, 502, 503, 504}

    def __init__(self, status_code, message, code=None, machine_id=None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code  # Structured error code, when the API sends one
        self.machine_id = machine_id

    def __str__(self):
        if self.status_code:
            return f"{self.message} (status {self.status_code})"
        return self.message

    @property
    def retryable(self):
        # No status means the request never got an answer
        return self.status_code is None or self.status_code in self.RETRYABLE_STATUSES

    @property
    def is_not_found(self):
        return self.status_code == 404

    def for_machine(self, machine_id, action):
        """The same error, naming the machine it happened to"""
        return type(self)(self.status_code, f"failed to {action} machine {machine_id}: {self.message}",
                          self.code, machine_id=machine_id)


class LeaseConflictError(DeploymentError):
    """Another holder has a live lease on the machine"""

    def __init__(self, machine_id, message=None):
        super().__init__(message or f"lease currently held by another deployment on machine {machine_id}")
        self.machine_id = machine_id


class UnrecoverableError(DeploymentError):
    """Aborts the whole deployment whatever the strategy says about continuing"""

    def __init__(self, cause):
        super().__init__(str(cause))
        self.cause = cause


class AbortedError(DeploymentError):
    def __init__(self, message="deployment aborted by user"):
        super().__init__(message)


class WaitTimeoutError(DeploymentError):
    flag = "--wait-timeout"

    def __init__(self, machine_id, timeout, desired_state):
        self.machine_id = machine_id
        self.timeout = timeout
        self.desired_state = desired_state
        super().__init__(
            f"timeout reached waiting for machine {machine_id} to be {desired_state} after {timeout:g}s"
        )

    @property
    def suggestion(self):
        hint = (f"You can increase the timeout with the {self.flag} flag "
                f"(currently {self.timeout:g}s)")
        if self.desired_state == "started":
            hint += ". A machine that never starts can also point to capacity problems in its region"
        return hint


class HealthCheckTimeoutError(WaitTimeoutError):
    def __init__(self, machine_id, timeout, passing=0, total=0):
        self.passing = passing
        self.total = total
        super().__init__(machine_id, timeout, "healthy")
        self.args = (f"timeout reached waiting for health checks to pass for machine {machine_id} "
                     f"({passing}/{total} passing after {timeout:g}s)",)


class SmokeCheckError(DeploymentError):
    def __init__(self, machine_id, message, log_lines=None):
        super().__init__(f"smoke checks for {machine_id} failed: {message}")
        self.machine_id = machine_id
        self.log_lines = log_lines or []


class CommandFailedError(DeploymentError):
    """A one-shot command machine exited non-zero"""

    def __init__(self, machine_id, exit_code, log_lines=None):
        super().__init__(f"machine {machine_id} exited with non-zero status of {exit_code}")
        self.machine_id = machine_id
        self.exit_code = exit_code
        self.log_lines = log_lines or []


class ReleaseCommandError(DeploymentError):
    def __init__(self, cause):
        super().__init__(f"release command failed - aborting deployment. {cause}")
        self.cause = cause

    @property
    def log_lines(self):
        return getattr(self.cause, "log_lines", [])


PLACEMENT_ERROR_CODE = "insufficient_capacity"
PLACEMENT_ERROR_TEXT = "could not reserve resource"


def is_placement_error(err):
    """The fleet could not place the update on the machine's current host"""
    code = getattr(err, "code", None)
    if code:
        return code == PLACEMENT_ERROR_CODE
    return PLACEMENT_ERROR_TEXT in str(err)


def is_lease_conflict(err):
    if isinstance(err, LeaseConflictError):
        return True
    text = str(err)
    return "lease currently held by" in text or "failed to get lease" in text


def is_unrecoverable(err):
    return isinstance(err, (UnrecoverableError, AbortedError, asyncio.CancelledError)) or is_lease_conflict(err)


def is_not_found(err):
    return isinstance(err, FleetAPIError) and err.is_not_found
