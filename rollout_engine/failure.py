from .errors import FleetAPIError


class FailureInjector:
    """Fails fleet operations on purpose.

    fail_attempts maps (operation, machine_id) to how many calls should fail;
    use "*" as machine_id to match any machine. errors maps the same keys to
    the exception to raise, a 500 FleetAPIError by default.
    """

    def __init__(self, fail_attempts=None, delay=0, errors=None):
        self.fail_map = fail_attempts or {}
        self.errors = errors or {}
        self.delay = delay
        self.attempts = {}

    def delay_seconds(self):
        return self.delay

    def _key(self, operation, machine_id):
        if (operation, machine_id) in self.fail_map:
            return (operation, machine_id)
        if (operation, "*") in self.fail_map:
            return (operation, "*")
        return None

    def should_fail(self, operation, machine_id=None):
        key = self._key(operation, machine_id)
        if key is None:
            return False
        self.attempts[key] = self.attempts.get(key, 0) + 1
        return self.attempts[key] <= self.fail_map[key]

    def error_for(self, operation, machine_id=None):
        key = self._key(operation, machine_id)
        err = self.errors.get(key)
        if err is None:
            return FleetAPIError(500, f"injected {operation} failure for {machine_id}")
        return err

    def check(self, operation, machine_id=None):
        if self.should_fail(operation, machine_id):
            raise self.error_for(operation, machine_id)
