"""
Waiting on machines.

Every wait here is bounded by the caller's timeout and raises a
WaitTimeoutError subclass when it runs out. Task cancellation is never
converted into a timeout: asyncio.CancelledError propagates untouched.
"""

import asyncio
import random

from .errors import FleetAPIError, HealthCheckTimeoutError, SmokeCheckError, WaitTimeoutError
from .logger import get_logger
from .models import MachineState

logger = get_logger("waiter")

STATE_POLL_TIMEOUT = 60.0  # Seconds per long-poll request
DEFAULT_CHECK_INTERVAL = 60.0
DEFAULT_GRACE_PERIOD = 1.0


class Backoff:
    """Exponential backoff with jitter between min_delay and the current ceiling"""

    def __init__(self, min_delay=0.5, max_delay=2.0, factor=2.0, jitter=True):
        self.min_delay = min_delay
        self.max_delay = max(min_delay, max_delay)
        self.factor = factor
        self.jitter = jitter
        self.attempt = 0

    def next_delay(self):
        ceiling = min(self.min_delay * (self.factor ** self.attempt), self.max_delay)
        self.attempt += 1
        if self.jitter:
            return random.uniform(self.min_delay, ceiling)
        return ceiling

    def reset(self):
        self.attempt = 0


def _state_name(state):
    return getattr(state, "value", state)


def declared_checks(config):
    """Every health check a machine config declares, top-level and per service"""
    checks = list(config.checks.values())
    for service in config.services:
        checks.extend(service.checks)
    return checks


def min_interval_and_grace(config):
    interval = DEFAULT_CHECK_INTERVAL
    grace = DEFAULT_GRACE_PERIOD
    for check in declared_checks(config):
        if check.interval is not None and 0 < check.interval < interval:
            interval = check.interval
        if check.grace_period is not None and check.grace_period < grace:
            grace = max(0.0, check.grace_period)
    return interval, grace


async def wait_for_state(client, machine, state, timeout, poll_timeout=STATE_POLL_TIMEOUT):
    """Long-poll the fleet API until machine reaches state"""
    state = _state_name(state)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    backoff = Backoff(0.5, 2.0, 2.0)

    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise WaitTimeoutError(machine.id, timeout, state)

        try:
            await asyncio.wait_for(client.wait(machine, state, min(poll_timeout, remaining)), timeout=remaining)
            return
        except asyncio.TimeoutError:
            raise WaitTimeoutError(machine.id, timeout, state)
        except FleetAPIError as e:
            if e.is_not_found:
                # A machine that is gone has reached "destroyed" for good
                if state == MachineState.DESTROYED:
                    return
                raise
            if e.status_code == 400:
                raise
            logger.debug(f"waiting for {machine.id} to be {state}: {e}")

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise WaitTimeoutError(machine.id, timeout, state)
        await asyncio.sleep(min(backoff.next_delay(), remaining))


async def wait_for_healthy(client, machine, timeout, top_level_only=False):
    """Poll aggregated check status until every check passes.

    Returns the last Machine read from the API, or the given machine when it
    declares no checks at all.
    """
    if not declared_checks(machine.config):
        return machine

    interval, grace = min_interval_and_grace(machine.config)
    backoff = Backoff(interval / 2, interval * 2, 2.0)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    passing, total = 0, 0

    await asyncio.sleep(min(grace, timeout))

    while True:
        try:
            current = await client.get(machine.id)
        except FleetAPIError as e:
            if not e.retryable:
                raise
            logger.debug(f"health poll for {machine.id} failed: {e}")
        else:
            if top_level_only:
                passing, total = current.top_level_health_status()
            else:
                passing, total = current.health_status()
            if total > 0 and passing == total:
                return current

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise HealthCheckTimeoutError(machine.id, timeout, passing, total)
        await asyncio.sleep(min(backoff.next_delay(), remaining))


async def wait_for_event_after(client, machine_id, event_type, after_type, timeout):
    """Poll until the machine records event_type after its latest after_type event"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    backoff = Backoff(0.1, 1.0, 2.0)

    while True:
        machine = await client.get(machine_id)
        event = machine.latest_event_after(event_type, after_type)
        if event is not None:
            return event

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise WaitTimeoutError(machine_id, timeout, f"{event_type} after {after_type}")
        await asyncio.sleep(min(backoff.next_delay(), remaining))


def _crashed_since_update(machine):
    for event in reversed(machine.events):
        if event.type in ("launch", "update"):
            return False
        if event.type == "exit" and event.exit_code not in (None, 0):
            return True
    return False


async def wait_for_smoke_checks(client, machine, window=10.0):
    """Machine must stay up for window seconds without exiting non-zero"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + window

    while True:
        current = await client.get(machine.id)
        if _crashed_since_update(current):
            try:
                log_lines = await client.get_logs(machine.id)
            except FleetAPIError as e:
                logger.debug(f"could not fetch logs for {machine.id}: {e}")
                log_lines = []
            raise SmokeCheckError(machine.id, "the app appears to be crashing", log_lines)

        remaining = deadline - loop.time()
        if remaining <= 0:
            return current
        await asyncio.sleep(min(1.0, remaining))
