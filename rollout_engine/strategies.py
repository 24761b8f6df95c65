import asyncio
import math

from .batching import allocate
from .errors import (
    AbortedError, ConfigurationError, FleetAPIError, WaitTimeoutError,
    is_placement_error, is_unrecoverable,
)
from .lease import LeasableMachine
from .logger import get_logger
from .models import MachineState
from .pool import WorkerPool
from .status import LoggingStatusLogger, StatusLines
from .waiter import wait_for_healthy, wait_for_smoke_checks, wait_for_state

ROLLING_MAX_CONCURRENT_GROUPS = 10
STOPPED_MACHINES_POOL_SIZE = 30


def pool_size(count, max_unavailable):
    """Machines of one group that may be in flight at once"""
    if max_unavailable is not None and max_unavailable >= 1:
        return int(max_unavailable)
    if max_unavailable is not None and 0 < max_unavailable < 1:
        return max(1, math.ceil(count * max_unavailable))
    raise ConfigurationError("Invalid --max-unavailable value, must be greater than 0")


class Strategy:
    """Applies update entries to the fleet"""

    name = None

    def __init__(self, client, runner=None, status=None, abort_event=None, result=None):
        self.client = client
        self.runner = runner
        self.status = status if status else StatusLines(LoggingStatusLogger())
        self.abort_event = abort_event
        self.result = result
        self.logger = get_logger(f"strategy.{self.name}")

    async def apply(self, entries, settings):
        raise NotImplementedError

    def check_abort(self):
        if self.abort_event is not None and self.abort_event.is_set():
            raise AbortedError()

    def _history(self, event, **details):
        if self.result is not None:
            self.result.record(event, **details)

    def _record(self, bucket, machine_id, event, **details):
        if self.result is None:
            return
        getattr(self.result, bucket).append(machine_id)
        self.result.record_machine(machine_id, event, **details)

    async def update_machine(self, entry, settings):
        """Lease, then update in place or replace. Returns the machine now serving."""
        lm = entry.leasable_machine
        launch_input = entry.launch_input
        if lm.destroyed:
            # An earlier attempt destroyed it but never launched the replacement
            return await self.launch_replacement(entry, settings)

        await lm.acquire_lease(settings.lease_timeout)

        if launch_input.requires_replacement:
            return await self.replace_machine(entry, settings)

        try:
            machine = await lm.update(launch_input)
        except FleetAPIError as e:
            if not is_placement_error(e):
                raise e.for_machine(lm.id, "update") from e
            if lm.machine.config.mounts:
                self.logger.warning(f"machine {lm.formatted_id()} could not be placed and has a volume, "
                                    f"not replacing it")
                raise e.for_machine(lm.id, "update") from e
            self.logger.info(f"Machine {lm.formatted_id()} could not be updated in place ({e}), replacing it")
            return await self.replace_machine(entry, settings)

        self._record("updated", lm.id, "updated")
        return machine

    async def replace_machine(self, entry, settings):
        lm = entry.leasable_machine
        self.logger.info(f"Replacing {lm.formatted_id()}")
        try:
            await lm.destroy(kill=True)
        except FleetAPIError as e:
            raise e.for_machine(lm.id, "destroy") from e
        return await self.launch_replacement(entry, settings)

    async def launch_replacement(self, entry, settings):
        """Launch the machine that takes over from the destroyed one"""
        lm = entry.leasable_machine
        launch_input = entry.launch_input
        launch_input.id = None
        launch_input.requires_replacement = False
        launch_input.lease_ttl = settings.wait_timeout
        try:
            machine = await self.client.launch(launch_input)
        except FleetAPIError as e:
            raise e.for_machine(lm.id, "launch a replacement for") from e
        entry.replacement = machine

        # The new machine is leased at launch, only for the mutation
        new_lm = LeasableMachine(self.client, machine, lm.leases, nonce=machine.lease_nonce)
        await new_lm.release_lease()
        self._record("replaced", lm.id, "replaced", new_machine=machine.id)
        return machine

    async def wait_for_machine(self, machine, launch_input, settings):
        if launch_input.skip_launch or settings.skip_health_checks:
            return
        await wait_for_state(self.client, machine, MachineState.STARTED, settings.wait_timeout)
        if self.runner is not None:
            await self.runner.run_test_commands(machine)
        if not settings.skip_smoke_checks:
            await wait_for_smoke_checks(self.client, machine, settings.smoke_check_window)
        await wait_for_healthy(self.client, machine, settings.wait_timeout)


def _is_warm(leasable_machine):
    # A machine destroyed by an earlier attempt was serving before that
    return leasable_machine.destroyed or leasable_machine.machine.state == MachineState.STARTED


class RollingStrategy(Strategy):
    """Groups in parallel, each group in waves no wider than max-unavailable"""

    name = "rolling"

    async def apply(self, entries, settings):
        groups = {}
        for entry in sorted(entries, key=lambda e: e.leasable_machine.id):
            groups.setdefault(entry.leasable_machine.process_group, []).append(entry)

        outer = WorkerPool(ROLLING_MAX_CONCURRENT_GROUPS, cancel_on_error=True, name="rolling-groups")
        for group, group_entries in groups.items():
            outer.go(self._rollout_group, group, group_entries, settings)
        await outer.wait()

    async def _rollout_group(self, group, entries, settings):
        """Started machines go through the waves, stopped ones alongside in one pool"""
        warm, cold = [], []
        for entry in entries:
            (warm if _is_warm(entry.leasable_machine) else cold).append(entry)

        pool = WorkerPool(2, cancel_on_error=True, name=f"rolling-{group}")
        if warm:
            pool.go(self._rollout_waves, group, warm, settings)
        if cold:
            pool.go(self._update_stopped, group, cold, settings)
        await pool.wait()

    async def _rollout_waves(self, group, entries, settings):
        size = pool_size(len(entries), settings.max_unavailable)
        # The first machine goes alone, the rest in waves of at most size
        wave_count = max(1, math.ceil((len(entries) - 1) / size))
        waves = allocate(entries, wave_count, solo_first=True)
        self.logger.info(f"Updating {len(entries)} machines in group {group} "
                         f"in {len(waves)} waves, at most {size} at a time")

        for index, wave in enumerate(waves, start=1):
            self.check_abort()
            self._history("wave_start", group=group, wave=index, machines=[e.leasable_machine.id for e in wave])
            pool = WorkerPool(size, cancel_on_error=True, name=f"rolling-{group}-wave")
            for entry in wave:
                pool.go(self._update_and_wait, entry, settings)
            await pool.wait()
            self._history("wave_completed", group=group, wave=index)

    async def _update_stopped(self, group, entries, settings):
        self.check_abort()
        self.logger.info(f"Updating {len(entries)} stopped machines in group {group}")
        self._history("stopped_machines", group=group, machines=[e.leasable_machine.id for e in entries])
        pool = WorkerPool(STOPPED_MACHINES_POOL_SIZE, cancel_on_error=True, name=f"rolling-{group}-stopped")
        for entry in entries:
            pool.go(self._update_and_wait, entry, settings)
        await pool.wait()

    async def _update_and_wait(self, entry, settings):
        lm = entry.leasable_machine
        line = self.status.line()
        line.running(f"Updating {lm.formatted_id()}")
        try:
            machine = await self.update_machine(entry, settings)
            line.running(f"Waiting for {machine.id} to become healthy")
            await self.wait_for_machine(machine, entry.launch_input, settings)
        except asyncio.CancelledError:
            line.failure(f"Update of {lm.formatted_id()} was cancelled")
            raise
        except Exception as e:
            line.failure(f"Update of {lm.formatted_id()} failed: {e}")
            if isinstance(e, WaitTimeoutError):
                self.logger.error(f"{e}. {e.suggestion}")
            self._record("failed", lm.id, "failed", error=str(e))
            raise
        line.success(f"Machine {machine.id} [{lm.process_group}] is ready")


class CanaryStrategy(RollingStrategy):
    """A throwaway canary per group has to come up healthy before the rolling pass"""

    name = "canary"

    async def launch_canaries(self, launch_inputs, settings):
        self._history("canaries", groups=[li.config.process_group for li in launch_inputs])
        pool = WorkerPool(settings.max_concurrent, cancel_on_error=True, name="canaries")
        for launch_input in launch_inputs:
            pool.go(self._run_canary, launch_input, settings)
        await pool.wait()

    async def _run_canary(self, launch_input, settings):
        group = launch_input.config.process_group
        line = self.status.line()
        line.running(f"Creating canary machine for group {group}")
        launch_input.lease_ttl = settings.lease_timeout
        try:
            machine = await self.client.launch(launch_input)
        except FleetAPIError as e:
            line.failure(f"Failed to create canary machine for group {group}: {e}")
            raise
        lm = LeasableMachine(self.client, machine, nonce=machine.lease_nonce)
        if self.result is not None:
            self.result.record_machine(machine.id, "canary", group=group)

        try:
            try:
                await self.wait_for_machine(machine, launch_input, settings)
            except (Exception, asyncio.CancelledError) as e:
                line.failure(f"Canary machine {lm.formatted_id()} failed: {e or 'cancelled'}")
                self.logger.error(f"Canary machine {lm.formatted_id()} was left in place for inspection")
                if self.result is not None:
                    self.result.hanging_machines.append(machine.id)
                raise
            await lm.destroy(kill=True)
        finally:
            await lm.release_lease()
        line.success(f"Canary machine {lm.formatted_id()} was healthy and is gone")


class ImmediateStrategy(Strategy):
    """Every update at once, no waiting, failures logged and skipped"""

    name = "immediate"

    async def apply(self, entries, settings):
        pool = WorkerPool(settings.max_concurrent, cancel_on_error=True, name="immediate")
        for entry in entries:
            pool.go(self._update_best_effort, entry, settings)
        await pool.wait()

    async def _update_best_effort(self, entry, settings):
        lm = entry.leasable_machine
        line = self.status.line()
        line.running(f"Updating {lm.formatted_id()}")
        try:
            await self.update_machine(entry, settings)
        except Exception as e:
            if is_unrecoverable(e):
                line.failure(f"Update of {lm.formatted_id()} failed: {e}")
                raise
            self.logger.warning(f"Continuing after error updating {lm.formatted_id()}: {e}")
            line.failure(f"Update of {lm.formatted_id()} failed, skipped")
            self._record("failed", lm.id, "failed", error=str(e))
            return
        line.success(f"Machine {lm.formatted_id()} updated")


def select_strategy(name):
    """Strategy class for a strategy name"""
    from .bluegreen import BlueGreenStrategy

    strategies = {
        "rolling": RollingStrategy,
        "canary": CanaryStrategy,
        "bluegreen": BlueGreenStrategy,
        "immediate": ImmediateStrategy,
    }
    if name not in strategies:
        raise ConfigurationError(f"unknown deployment strategy '{name}'")
    return strategies[name]
