import asyncio
import random

from .errors import DeploymentError, FleetAPIError, LeaseConflictError, is_lease_conflict
from .logger import get_logger
from .models import MachineState
from .waiter import min_interval_and_grace

RELEASE_GRACE_PERIOD = 0.5  # Seconds a release may take while we are being cancelled
REFRESH_JITTER = 0.02


def _being_cancelled():
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0


def _is_lease_gone(err):
    return isinstance(err, FleetAPIError) and (err.is_not_found or "lease not found" in err.message)


class LeaseManager:
    """Acquire, refresh and release per-machine leases"""

    def __init__(self, client):
        self.client = client
        self.logger = get_logger("lease")

    async def acquire(self, machine_id, ttl):
        """Take the lease or fail fast; conflicts are never retried here"""
        try:
            lease = await self.client.acquire_lease(machine_id, ttl)
        except LeaseConflictError:
            raise
        except FleetAPIError as e:
            if e.status_code == 409 or is_lease_conflict(e):
                raise LeaseConflictError(machine_id, f"failed to get lease on machine {machine_id}: {e}") from e
            raise
        if lease is None or not lease.nonce:
            raise LeaseConflictError(machine_id, f"failed to get lease on machine {machine_id}")
        self.logger.debug(f"acquired lease on {machine_id}")
        return lease

    async def refresh(self, machine_id, nonce, ttl):
        lease = await self.client.refresh_lease(machine_id, ttl, nonce)
        if lease.nonce != nonce:
            raise DeploymentError(f"unexpectedly received a new lease nonce for machine {machine_id}")
        return lease

    async def release(self, machine_id, nonce):
        """Release a lease. Releasing one that is gone already is fine."""
        if not nonce:
            return
        try:
            if _being_cancelled():
                # The caller is going away; give the API a short window anyway
                await asyncio.shield(asyncio.wait_for(self.client.release_lease(machine_id, nonce),
                                                      RELEASE_GRACE_PERIOD))
            else:
                await self.client.release_lease(machine_id, nonce)
        except FleetAPIError as e:
            if _is_lease_gone(e):
                self.logger.debug(f"lease on {machine_id} was already released")
                return
            raise
        except asyncio.TimeoutError:
            self.logger.warning(f"timed out releasing lease on {machine_id}, it will expire on its own")
            return
        self.logger.debug(f"released lease on {machine_id}")

    async def refresh_loop(self, machine_id, nonce, ttl, interval):
        """Keep a lease alive until cancelled"""
        while True:
            delay = interval + random.uniform(-REFRESH_JITTER, REFRESH_JITTER)
            await asyncio.sleep(max(0.0, delay))
            try:
                await self.refresh(machine_id, nonce, ttl)
            except FleetAPIError as e:
                if e.is_not_found and "machine" in e.message and "not found" in e.message:
                    self.logger.debug(f"machine {machine_id} is gone, stopping lease refresh")
                    return
                self.logger.warning(f"failed to refresh lease for machine {machine_id}: {e}")
            except DeploymentError as e:
                self.logger.warning(f"failed to refresh lease for machine {machine_id}: {e}")


class LeasableMachine:
    """A machine snapshot plus the lease we hold on it"""

    def __init__(self, client, machine, lease_manager=None, nonce=None):
        self.client = client
        self.machine = machine
        self.leases = lease_manager if lease_manager else LeaseManager(client)
        self.nonce = nonce or machine.lease_nonce
        self.destroyed = False
        self.logger = get_logger("machine")
        self._refresh_task = None

    @property
    def id(self):
        return self.machine.id

    @property
    def process_group(self):
        return self.machine.process_group

    def formatted_id(self):
        return f"{self.machine.id} [{self.machine.process_group}]"

    def has_lease(self):
        return self.nonce is not None

    def min_interval_and_grace(self):
        return min_interval_and_grace(self.machine.config)

    async def acquire_lease(self, ttl):
        """Acquire unless we already hold it; re-reads the machine when its version moved"""
        if self.has_lease():
            return
        lease = await self.leases.acquire(self.machine.id, ttl)
        self.nonce = lease.nonce
        if lease.version and lease.version != self.machine.instance_id:
            self.machine = await self.client.get(self.machine.id)

    async def refresh_lease(self, ttl):
        if not self.has_lease():
            raise DeploymentError(f"no lease held on machine {self.machine.id}")
        await self.leases.refresh(self.machine.id, self.nonce, ttl)

    async def release_lease(self):
        self.stop_background_refresh()
        nonce, self.nonce = self.nonce, None
        if self.destroyed:
            return
        await self.leases.release(self.machine.id, nonce)

    def start_background_refresh(self, ttl, interval):
        if self._refresh_task is not None or not self.has_lease():
            return
        self._refresh_task = asyncio.create_task(
            self.leases.refresh_loop(self.machine.id, self.nonce, ttl, interval),
            name=f"lease-refresh-{self.machine.id}",
        )

    def stop_background_refresh(self):
        task, self._refresh_task = self._refresh_task, None
        if task is not None and not task.done():
            task.cancel()
        return task

    def _require_lease(self, action):
        if not self.has_lease():
            raise DeploymentError(f"cannot {action} machine {self.machine.id} without holding its lease")

    async def update(self, launch_input):
        self._require_lease("update")
        if self.destroyed or self.machine.state == MachineState.DESTROYED:
            raise DeploymentError(f"cannot update machine {self.machine.id}, it has been destroyed")
        launch_input.id = self.machine.id
        self.machine = await self.client.update(self.machine.id, launch_input, self.nonce)
        return self.machine

    async def destroy(self, kill=False):
        if self.destroyed:
            return
        try:
            await self.client.destroy(self.machine.id, kill=kill, nonce=self.nonce)
        except FleetAPIError as e:
            if not e.is_not_found:
                raise
        self.destroyed = True
        self.stop_background_refresh()
        self.machine.state = MachineState.DESTROYED

    async def start(self):
        await self.client.start(self.machine.id, nonce=self.nonce)

    async def stop(self, signal=None):
        await self.client.stop(self.machine.id, signal=signal, nonce=self.nonce)

    async def cordon(self):
        await self.client.cordon(self.machine.id, nonce=self.nonce)

    async def uncordon(self):
        await self.client.uncordon(self.machine.id, nonce=self.nonce)

    async def set_metadata(self, key, value):
        await self.client.set_metadata(self.machine.id, key, value, nonce=self.nonce)
        self.machine.config.metadata[key] = value

    async def refresh(self):
        """Re-read the machine from the API"""
        self.machine = await self.client.get(self.machine.id)
        return self.machine
