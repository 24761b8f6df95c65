import asyncio
import pytest
from rollout_engine.errors import (
    ConfigurationError, FleetAPIError, HealthCheckTimeoutError, LeaseConflictError,
)
from rollout_engine.failure import FailureInjector
from rollout_engine.inmem import InMemoryFleetClient
from rollout_engine.lease import LeasableMachine
from rollout_engine.models import DeploymentResult, MachineState, UpdateEntry
from rollout_engine.plan import compute_plan
from rollout_engine.strategies import (
    CanaryStrategy, ImmediateStrategy, RollingStrategy, pool_size, select_strategy,
)

from conftest import NEW_IMAGE


def update_entries(client, machines, template):
    plan = compute_plan(machines, {"app": template})
    return [UpdateEntry(LeasableMachine(client, e.old_machine), e.launch_input)
            for e in plan.updates + plan.replaces]


class TrackingFleetClient(InMemoryFleetClient):
    """Counts machines between the start of their update and their first healthy read"""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.in_flight = set()
        self.max_in_flight = 0

    async def update(self, machine_id, launch_input, nonce):
        self.in_flight.add(machine_id)
        self.max_in_flight = max(self.max_in_flight, len(self.in_flight))
        await asyncio.sleep(0.02)
        return await super().update(machine_id, launch_input, nonce)

    async def get(self, machine_id):
        machine = await super().get(machine_id)
        passing, total = machine.health_status()
        if total and passing == total:
            self.in_flight.discard(machine_id)
        return machine


class OverlapFleetClient(InMemoryFleetClient):
    """Records how many updates run at the same time"""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.running = 0
        self.max_running = 0

    async def update(self, machine_id, launch_input, nonce):
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(0.05)
            return await super().update(machine_id, launch_input, nonce)
        finally:
            self.running -= 1


class TestPoolSize:
    def test_absolute_and_fractional(self):
        assert pool_size(10, 3) == 3
        assert pool_size(10, 1) == 1
        assert pool_size(10, 0.33) == 4
        assert pool_size(3, 0.1) == 1
        assert pool_size(4, 2.7) == 2

    def test_zero_is_rejected(self):
        with pytest.raises(ConfigurationError, match="max-unavailable"):
            pool_size(10, 0)

    def test_strategy_names(self):
        assert select_strategy("rolling") is RollingStrategy
        assert select_strategy("canary") is CanaryStrategy
        assert select_strategy("immediate") is ImmediateStrategy
        with pytest.raises(ConfigurationError):
            select_strategy("yolo")


class TestRollingStrategy:
    """Waves per process group, bounded by max-unavailable."""

    @pytest.mark.asyncio
    async def test_first_machine_goes_alone(self, client, make_template, seed, make_config):
        template = make_template()
        machines = seed(client, "app", template, 5)
        result = DeploymentResult(success=False)
        strategy = RollingStrategy(client, result=result)

        await strategy.apply(update_entries(client, machines, template), make_config(max_unavailable=2))

        waves = [h["machines"] for h in result.history if h["event"] == "wave_start"]
        assert waves == [["app-0"], ["app-1", "app-2"], ["app-3", "app-4"]]
        assert sorted(result.updated) == ["app-0", "app-1", "app-2", "app-3", "app-4"]
        assert all(m.config.image == NEW_IMAGE for m in client.live_machines())

    @pytest.mark.asyncio
    async def test_never_more_than_max_unavailable(self, make_template, seed, make_config):
        client = TrackingFleetClient()
        template = make_template()
        machines = seed(client, "app", template, 9)

        await RollingStrategy(client).apply(update_entries(client, machines, template),
                                            make_config(max_unavailable=3))
        assert client.max_in_flight == 3
        assert client.in_flight == set()

    @pytest.mark.asyncio
    async def test_groups_roll_in_parallel(self, client, make_template, seed, make_config):
        template = make_template()
        machines = seed(client, "app", template, 2) + seed(client, "worker", template, 2)
        plan = compute_plan(machines, {"app": template, "worker": template})
        entries = [UpdateEntry(LeasableMachine(client, e.old_machine), e.launch_input) for e in plan.updates]
        result = DeploymentResult(success=False)

        await RollingStrategy(client, result=result).apply(entries, make_config(max_unavailable=1))
        groups = {h["group"] for h in result.history if h["event"] == "wave_completed"}
        assert groups == {"app", "worker"}
        assert len(result.updated) == 4

    @pytest.mark.asyncio
    async def test_failed_first_machine_stops_the_group(self, make_template, seed, make_config):
        client = InMemoryFleetClient(unhealthy_images={NEW_IMAGE})
        template = make_template()
        machines = seed(client, "app", template, 4)
        result = DeploymentResult(success=False)

        with pytest.raises(HealthCheckTimeoutError):
            await RollingStrategy(client, result=result).apply(
                update_entries(client, machines, template), make_config(wait_timeout=0.3))
        assert client.calls_for("update") == ["app-0"]
        assert result.failed == ["app-0"]

    @pytest.mark.asyncio
    async def test_placement_failure_falls_back_to_replacement(self, make_template, seed, make_config):
        injector = FailureInjector(
            fail_attempts={("update", "app-0"): 1},
            errors={("update", "app-0"): FleetAPIError(412, "no room on host", "insufficient_capacity")},
        )
        client = InMemoryFleetClient(failure_injector=injector)
        template = make_template()
        machines = seed(client, "app", template, 1)
        result = DeploymentResult(success=False)

        await RollingStrategy(client, result=result).apply(update_entries(client, machines, template), make_config())
        assert result.replaced == ["app-0"]
        assert client.machines["app-0"].state == "destroyed"
        replacement = client.machines["m00001"]
        assert replacement.config.image == NEW_IMAGE
        # The replacement is only leased while it is being created
        assert "m00001" not in client.leases

    @pytest.mark.asyncio
    async def test_other_errors_are_not_placement_failures(self, make_template, seed, make_config):
        injector = FailureInjector(
            fail_attempts={("update", "app-0"): 1},
            errors={("update", "app-0"): FleetAPIError(422, "invalid guest size", "invalid_config")},
        )
        client = InMemoryFleetClient(failure_injector=injector)
        template = make_template()
        machines = seed(client, "app", template, 1)

        with pytest.raises(FleetAPIError, match="invalid guest size") as excinfo:
            await RollingStrategy(client).apply(update_entries(client, machines, template), make_config())
        assert client.calls_for("launch") == []
        assert excinfo.value.machine_id == "app-0"
        assert excinfo.value.status_code == 422
        assert str(excinfo.value).startswith("failed to update machine app-0")

    @pytest.mark.asyncio
    async def test_stopped_machines_update_beside_the_waves(self, make_template, seed, make_config):
        client = OverlapFleetClient()
        template = make_template()
        machines = seed(client, "app", template, 6)
        for machine in machines[2:]:
            machine.state = MachineState.STOPPED
        result = DeploymentResult(success=False)

        await RollingStrategy(client, result=result).apply(update_entries(client, machines, template),
                                                           make_config(max_unavailable=1))

        waves = [h["machines"] for h in result.history if h["event"] == "wave_start"]
        assert waves == [["app-0"], ["app-1"]]
        stopped = [h["machines"] for h in result.history if h["event"] == "stopped_machines"]
        assert stopped == [["app-2", "app-3", "app-4", "app-5"]]
        # All four stopped machines went alongside the solo first wave
        assert client.max_running == 5
        assert len(result.updated) == 6


class TestImmediateStrategy:
    """Everything at once, skipping over failures."""

    @pytest.mark.asyncio
    async def test_continues_after_errors(self, make_template, seed, make_config):
        client = InMemoryFleetClient(failure_injector=FailureInjector(fail_attempts={("update", "app-1"): 1}))
        template = make_template()
        machines = seed(client, "app", template, 3)
        result = DeploymentResult(success=False)

        await ImmediateStrategy(client, result=result).apply(
            update_entries(client, machines, template), make_config(strategy="immediate"))
        assert sorted(result.updated) == ["app-0", "app-2"]
        assert result.failed == ["app-1"]
        # Nothing is waited on
        assert client.calls_for("wait") == []

    @pytest.mark.asyncio
    async def test_lease_conflict_is_fatal(self, client, make_template, seed, make_config):
        template = make_template()
        machines = seed(client, "app", template, 3)
        await client.acquire_lease("app-1", 30)

        with pytest.raises(LeaseConflictError):
            await ImmediateStrategy(client).apply(update_entries(client, machines, template),
                                                  make_config(strategy="immediate", max_concurrent=1))
        assert "app-1" not in client.calls_for("update")
