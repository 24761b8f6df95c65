import asyncio
import copy
import itertools
import time
import uuid

from .errors import FleetAPIError, LeaseConflictError
from .failure import FailureInjector
from .fleet import FleetClient
from .logger import get_logger
from .models import (
    CheckResult, CheckStatus, Lease, Machine, MachineEvent, MachineState,
    SERVICE_CHECK_PREFIX, Volume,
)

MUTATIONS = {"launch", "update", "destroy", "start", "stop", "cordon", "uncordon"}


class InMemoryFleetClient(FleetClient):
    """A fleet API that lives in process memory.

    Machines change state instantly. Images listed in unhealthy_images come up
    with critical checks, images in hanging_images never leave "starting" and
    images in crashing_images exit non-zero and restart right after booting.
    Auto-destroying command machines exit with command_exit_codes[command]
    (0 by default) and keep command_logs[command] as their logs.
    """

    def __init__(self, failure_injector=None, unhealthy_images=None, hanging_images=None,
                 crashing_images=None, command_exit_codes=None, command_logs=None, require_leases=True):
        self.failure_injector = failure_injector if failure_injector else FailureInjector()
        self.unhealthy_images = set(unhealthy_images or ())
        self.hanging_images = set(hanging_images or ())
        self.crashing_images = set(crashing_images or ())
        self.command_exit_codes = dict(command_exit_codes or {})
        self.command_logs = dict(command_logs or {})
        self.require_leases = require_leases
        self.machines = {}
        self.volumes = {}
        self.leases = {}
        self.logs = {}
        self.cordoned = set()
        self.calls = []  # (operation, machine_id)
        self._ids = itertools.count(1)
        self.logger = get_logger("inmem")

    # Seeding helpers for tests and local runs

    def add_machine(self, machine):
        machine = copy.deepcopy(machine)
        if not machine.instance_id:
            machine.instance_id = self._instance_id()
        if not machine.checks:
            machine.checks = self._checks_for(machine)
        self.machines[machine.id] = machine
        for mount in machine.config.mounts:
            if mount.volume in self.volumes:
                self.volumes[mount.volume].attached_machine_id = machine.id
        return machine

    def add_volume(self, volume):
        self.volumes[volume.id] = copy.deepcopy(volume)
        return self.volumes[volume.id]

    def calls_for(self, operation):
        return [machine_id for op, machine_id in self.calls if op == operation]

    @property
    def mutating_calls(self):
        return [(op, machine_id) for op, machine_id in self.calls if op in MUTATIONS]

    def live_machines(self):
        return [m for m in self.machines.values() if m.state != MachineState.DESTROYED]

    # Internals

    def _instance_id(self):
        return uuid.uuid4().hex[:12]

    async def _call(self, operation, machine_id=None):
        self.calls.append((operation, machine_id))
        delay = self.failure_injector.delay_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        self.failure_injector.check(operation, machine_id)

    def _machine(self, machine_id):
        machine = self.machines.get(machine_id)
        if machine is None or machine.state == MachineState.DESTROYED:
            raise FleetAPIError(404, f"machine {machine_id} not found", "not_found")
        return machine

    def _live_lease(self, machine_id):
        lease = self.leases.get(machine_id)
        if lease is not None and lease.expires_at <= time.time():
            del self.leases[machine_id]
            return None
        return lease

    def _check_lease(self, machine_id, nonce):
        lease = self._live_lease(machine_id)
        if lease is None:
            if self.require_leases:
                raise FleetAPIError(412, f"machine {machine_id} must be leased before it can be changed")
            return
        if lease.nonce != nonce:
            raise FleetAPIError(409, f"lease currently held by {lease.owner or 'another holder'}")

    def _checks_for(self, machine):
        status = CheckStatus.CRITICAL if machine.config.image in self.unhealthy_images else CheckStatus.PASSING
        checks = [CheckResult(name, status) for name in machine.config.checks]
        for service in machine.config.services:
            for i, check in enumerate(service.checks):
                name = f"{SERVICE_CHECK_PREFIX}{i:02d}-{check.type}-{service.internal_port}"
                checks.append(CheckResult(name, status))
        return checks

    def _add_event(self, machine, event_type, **kwargs):
        machine.events.append(MachineEvent(event_type, timestamp=time.time(), **kwargs))

    def _boot(self, machine, skip_launch):
        if skip_launch:
            machine.state = MachineState.STOPPED
            return
        if machine.config.image in self.hanging_images:
            machine.state = MachineState.STARTING
            return
        machine.state = MachineState.STARTED
        self._add_event(machine, "start", status="started")
        if machine.config.image in self.crashing_images:
            self._add_event(machine, "exit", status="restarting", exit_code=1)
            self._add_event(machine, "start", status="started")
        if machine.config.auto_destroy and machine.config.command:
            self._run_to_exit(machine)

    def _run_to_exit(self, machine):
        command = " ".join(machine.config.command)
        exit_code = self.command_exit_codes.get(command, 0)
        self.logs[machine.id] = list(self.command_logs.get(command, []))
        self._add_event(machine, "exit", status="stopped", exit_code=exit_code)
        self._add_event(machine, "destroy", status="destroyed")
        machine.state = MachineState.DESTROYED

    def _attach_volumes(self, machine):
        for mount in machine.config.mounts:
            volume = self.volumes.get(mount.volume)
            if volume is None:
                raise FleetAPIError(400, f"volume {mount.volume} not found")
            if volume.attached_machine_id not in (None, machine.id):
                raise FleetAPIError(400, f"volume {mount.volume} is already attached to {volume.attached_machine_id}")
            volume.attached_machine_id = machine.id

    def _detach_volumes(self, machine):
        for volume in self.volumes.values():
            if volume.attached_machine_id == machine.id:
                volume.attached_machine_id = None

    # FleetClient

    async def launch(self, launch_input):
        machine_id = launch_input.id or f"m{next(self._ids):05d}"
        await self._call("launch", machine_id)
        config = copy.deepcopy(launch_input.config)
        machine = Machine(
            id=machine_id,
            region=launch_input.region,
            config=config,
            instance_id=self._instance_id(),
            name=launch_input.name,
        )
        self._attach_volumes(machine)
        self._add_event(machine, "launch", status="created")
        machine.checks = self._checks_for(machine)
        self.machines[machine_id] = machine
        self._boot(machine, launch_input.skip_launch)

        result = copy.deepcopy(machine)
        if launch_input.lease_ttl and machine.state != MachineState.DESTROYED:
            lease = Lease(uuid.uuid4().hex, time.time() + launch_input.lease_ttl, owner="launcher",
                          version=machine.instance_id)
            self.leases[machine_id] = lease
            result.lease_nonce = lease.nonce
        return result

    async def update(self, machine_id, launch_input, nonce):
        await self._call("update", machine_id)
        machine = self._machine(machine_id)
        self._check_lease(machine_id, nonce)
        self._detach_volumes(machine)
        machine.config = copy.deepcopy(launch_input.config)
        self._attach_volumes(machine)
        machine.instance_id = self._instance_id()
        machine.checks = self._checks_for(machine)
        self._add_event(machine, "update", status="replaced")
        self._boot(machine, launch_input.skip_launch)
        return copy.deepcopy(machine)

    async def destroy(self, machine_id, kill=False, nonce=None):
        await self._call("destroy", machine_id)
        machine = self._machine(machine_id)
        self._check_lease(machine_id, nonce)
        self._add_event(machine, "destroy", status="destroyed")
        machine.state = MachineState.DESTROYED
        self._detach_volumes(machine)
        self.leases.pop(machine_id, None)
        self.cordoned.discard(machine_id)

    async def start(self, machine_id, nonce=None):
        await self._call("start", machine_id)
        machine = self._machine(machine_id)
        self._check_lease(machine_id, nonce)
        self._boot(machine, False)

    async def stop(self, machine_id, signal=None, nonce=None):
        await self._call("stop", machine_id)
        machine = self._machine(machine_id)
        self._check_lease(machine_id, nonce)
        machine.state = MachineState.STOPPED
        self._add_event(machine, "exit", status="stopped", exit_code=0)

    async def cordon(self, machine_id, nonce=None):
        await self._call("cordon", machine_id)
        self._machine(machine_id)
        self._check_lease(machine_id, nonce)
        self.cordoned.add(machine_id)

    async def uncordon(self, machine_id, nonce=None):
        await self._call("uncordon", machine_id)
        self._machine(machine_id)
        self._check_lease(machine_id, nonce)
        self.cordoned.discard(machine_id)

    async def list(self, state=None):
        await self._call("list")
        if state:
            found = [m for m in self.machines.values() if m.state == state]
        else:
            found = self.live_machines()
        return [copy.deepcopy(m) for m in found]

    async def get(self, machine_id):
        await self._call("get", machine_id)
        machine = self.machines.get(machine_id)
        if machine is None:
            raise FleetAPIError(404, f"machine {machine_id} not found", "not_found")
        return copy.deepcopy(machine)

    async def acquire_lease(self, machine_id, ttl):
        await self._call("acquire_lease", machine_id)
        machine = self._machine(machine_id)
        lease = self._live_lease(machine_id)
        if lease is not None:
            raise LeaseConflictError(machine_id, f"failed to get lease on machine {machine_id}: "
                                                 f"lease currently held by {lease.owner or 'another holder'}")
        lease = Lease(uuid.uuid4().hex, time.time() + ttl, owner="deployer", version=machine.instance_id)
        self.leases[machine_id] = lease
        return copy.deepcopy(lease)

    async def refresh_lease(self, machine_id, ttl, nonce):
        await self._call("refresh_lease", machine_id)
        self._machine(machine_id)
        lease = self._live_lease(machine_id)
        if lease is None or lease.nonce != nonce:
            raise FleetAPIError(409, f"failed to get lease on machine {machine_id}: lease not held")
        lease.expires_at = time.time() + ttl
        return copy.deepcopy(lease)

    async def release_lease(self, machine_id, nonce):
        await self._call("release_lease", machine_id)
        lease = self._live_lease(machine_id)
        if lease is None or lease.nonce != nonce:
            raise FleetAPIError(404, "lease not found")
        del self.leases[machine_id]

    async def wait(self, machine, state, timeout):
        await self._call("wait", machine.id)
        current = self.machines.get(machine.id)
        if current is None:
            raise FleetAPIError(404, f"machine {machine.id} not found", "not_found")
        if current.state == state:
            return
        if current.state == MachineState.DESTROYED:
            raise FleetAPIError(404, f"machine {machine.id} not found", "not_found")
        # Nothing changes by itself in memory, so the long-poll just runs out
        await asyncio.sleep(min(timeout, 0.05))
        raise FleetAPIError(408, f"deadline exceeded waiting for machine {machine.id} to be {state}")

    async def set_metadata(self, machine_id, key, value, nonce=None):
        await self._call("set_metadata", machine_id)
        self._machine(machine_id).config.metadata[key] = value

    async def get_metadata(self, machine_id):
        await self._call("get_metadata", machine_id)
        return dict(self._machine(machine_id).config.metadata)

    async def get_volumes(self):
        await self._call("get_volumes")
        return [copy.deepcopy(v) for v in self.volumes.values()]

    async def create_volume(self, name, region, size_gb=1):
        await self._call("create_volume")
        volume = Volume(id=f"vol_{next(self._ids):05d}", name=name, region=region, size_gb=size_gb)
        self.volumes[volume.id] = volume
        return copy.deepcopy(volume)

    async def get_logs(self, machine_id, limit=100):
        await self._call("get_logs", machine_id)
        return list(self.logs.get(machine_id, []))[-limit:]
