import asyncio

from .errors import FleetAPIError
from .lease import LeasableMachine, LeaseManager
from .logger import get_logger
from .pool import WorkerPool

MAX_CONCURRENT_LEASES = 20


class MachineSet:
    """Leases, refreshes and releases a group of machines together"""

    def __init__(self, client, machines, lease_manager=None):
        self.client = client
        self.leases = lease_manager if lease_manager else LeaseManager(client)
        self.logger = get_logger("machine_set")
        self.machines = [
            m if isinstance(m, LeasableMachine) else LeasableMachine(client, m, self.leases)
            for m in machines
        ]

    def __len__(self):
        return len(self.machines)

    def __iter__(self):
        return iter(self.machines)

    def get(self, machine_id):
        for lm in self.machines:
            if lm.id == machine_id:
                return lm
        return None

    def add(self, leasable_machine):
        self.machines.append(leasable_machine)

    async def acquire_leases(self, ttl):
        """Lease every machine or none: any failure releases what was taken"""
        if not self.machines:
            return
        self.logger.info(f"Acquiring leases on {len(self.machines)} machines")
        pool = WorkerPool(MAX_CONCURRENT_LEASES, cancel_on_error=True, name="acquire-leases")
        for lm in self.machines:
            pool.go(lm.acquire_lease, ttl)
        try:
            await pool.wait()
        except BaseException:
            await self.release_leases()
            raise

    def start_background_refresh(self, ttl, interval):
        for lm in self.machines:
            lm.start_background_refresh(ttl, interval)

    async def stop_background_refresh(self):
        """Cancel every refresh task and wait for them to finish"""
        tasks = [t for t in (lm.stop_background_refresh() for lm in self.machines) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def release_leases(self):
        """Release every held lease; gone leases and gone machines are fine"""
        await self.stop_background_refresh()
        held = [lm for lm in self.machines if lm.has_lease()]
        if not held:
            return
        self.logger.info(f"Releasing leases on {len(held)} machines")
        results = await asyncio.gather(*(lm.release_lease() for lm in held), return_exceptions=True)
        for lm, outcome in zip(held, results):
            if isinstance(outcome, FleetAPIError) and outcome.is_not_found:
                continue
            if isinstance(outcome, BaseException):
                self.logger.warning(f"failed to release lease for machine {lm.id}: {outcome}")

    async def remove_machines(self, machines=None, kill=True):
        """Destroy machines (all of this set by default) and drop them from the set"""
        targets = list(machines) if machines is not None else list(self.machines)
        pool = WorkerPool(MAX_CONCURRENT_LEASES, cancel_on_error=True, name="remove-machines")
        for lm in targets:
            self.logger.info(f"Destroying machine {lm.formatted_id()}")
            pool.go(lm.destroy, kill)
        await pool.wait()
        removed = {lm.id for lm in targets}
        self.machines = [lm for lm in self.machines if lm.id not in removed]
