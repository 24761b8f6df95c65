import asyncio
import pytest
from rollout_engine.engine import DeploymentEngine
from rollout_engine.errors import (
    ConfigurationError, FleetAPIError, HealthCheckTimeoutError, LeaseConflictError, PlanError, ReleaseCommandError,
)
from rollout_engine.failure import FailureInjector
from rollout_engine.inmem import InMemoryFleetClient
from rollout_engine.models import (
    METADATA_CANARY, METADATA_RELEASE_ID, METADATA_RELEASE_VERSION, Guest, MachineState, Mount, Volume,
)

from conftest import NEW_IMAGE, OLD_IMAGE


def first_call(client, operation):
    for index, (op, _) in enumerate(client.calls):
        if op == operation:
            return index
    return None


class TestDeploy:
    """End to end runs against the in-memory fleet."""

    @pytest.mark.asyncio
    async def test_rolls_every_machine_forward(self, client, make_template, seed, make_config):
        seed(client, "app", make_template(), 4)
        engine = DeploymentEngine(client, {"app": make_template()}, make_config())

        result = await engine.deploy_machines_app()
        assert result.success
        assert sorted(result.updated) == ["app-0", "app-1", "app-2", "app-3"]
        assert result.failed == []
        assert all(m.config.image == NEW_IMAGE for m in client.live_machines())
        assert client.leases == {}

    @pytest.mark.asyncio
    async def test_second_run_changes_nothing(self, client, make_template, seed, make_config):
        seed(client, "app", make_template(), 2)
        await DeploymentEngine(client, {"app": make_template()}, make_config()).deploy_machines_app()
        client.calls.clear()

        result = await DeploymentEngine(client, {"app": make_template()}, make_config()).deploy_machines_app()
        assert result.success
        assert result.updated == []
        assert sorted(result.skipped) == ["app-0", "app-1"]
        assert "no_updates_needed" in [h["event"] for h in result.history]
        assert client.mutating_calls == []

    @pytest.mark.asyncio
    async def test_stale_groups_destroyed_and_new_groups_created(self, client, make_template, seed, make_config):
        seed(client, "app", make_template(), 2, image=NEW_IMAGE)
        seed(client, "worker", make_template(), 2)
        templates = {"app": make_template(), "web": make_template()}
        engine = DeploymentEngine(client, templates, make_config(primary_region="ord"))

        result = await engine.deploy_machines_app()
        assert sorted(result.destroyed) == ["worker-0", "worker-1"]
        assert len(result.created) == 1
        created = client.machines[result.created[0]]
        assert created.process_group == "web"
        assert created.region == "ord"
        assert sorted(m.process_group for m in client.live_machines()) == ["app", "app", "web"]
        assert client.leases == {}

    @pytest.mark.asyncio
    async def test_update_only_creates_nothing(self, client, make_template, seed, make_config):
        seed(client, "app", make_template(), 1)
        engine = DeploymentEngine(client, {"app": make_template(), "web": make_template()},
                                  make_config(update_only=True))

        result = await engine.deploy_machines_app()
        assert result.created == []
        assert result.updated == ["app-0"]

    @pytest.mark.asyncio
    async def test_no_templates_destroys_every_group(self, client, make_template, seed, make_config):
        seed(client, "app", make_template(), 2)
        seed(client, "worker", make_template(), 1)

        result = await DeploymentEngine(client, {}, make_config()).deploy_machines_app()
        assert result.success
        assert sorted(result.destroyed) == ["app-0", "app-1", "worker-0"]
        assert client.live_machines() == []
        assert client.calls_for("launch") == []

    @pytest.mark.asyncio
    async def test_filters_touch_only_selected_machines(self, client, make_template, seed, make_config):
        seed(client, "app", make_template(), 3)
        seed(client, "worker", make_template(), 1)
        engine = DeploymentEngine(client, {"app": make_template(), "web": make_template()},
                                  make_config(only_machines=["app-1"]))

        result = await engine.deploy_machines_app()
        assert result.updated == ["app-1"]
        # Filtered deploys never create or destroy
        assert result.created == []
        assert result.destroyed == []
        assert client.calls_for("acquire_lease") == ["app-1"]

    @pytest.mark.asyncio
    async def test_release_metadata_is_stamped(self, client, make_template, seed, make_config):
        seed(client, "app", make_template(), 1)
        config = make_config(release_id="rel_42", release_version=7)
        await DeploymentEngine(client, {"app": make_template()}, config).deploy_machines_app()

        metadata = client.machines["app-0"].config.metadata
        assert metadata[METADATA_RELEASE_ID] == "rel_42"
        assert metadata[METADATA_RELEASE_VERSION] == "7"

    @pytest.mark.asyncio
    async def test_dry_run_touches_nothing(self, client, make_template, seed, make_config):
        seed(client, "app", make_template(), 2)
        seed(client, "worker", make_template(), 1)
        engine = DeploymentEngine(client, {"app": make_template()},
                                  make_config(dry_run=True, release_command="bin/migrate"))

        result = await engine.deploy_machines_app()
        assert result.success
        dry_run = [h for h in result.history if h["event"] == "dry_run"][0]
        assert dry_run["update"] == 2
        assert dry_run["destroy"] == 1
        assert client.mutating_calls == []
        assert client.calls_for("acquire_lease") == []

    @pytest.mark.asyncio
    async def test_restart_only_restamps_without_new_image(self, client, make_template, seed, make_config):
        seed(client, "app", make_template(), 2)
        config = make_config(restart_only=True, release_id="rel_9")
        engine = DeploymentEngine(client, {"app": make_template()}, config, image="registry.example/app:v9")

        result = await engine.deploy_machines_app()
        assert sorted(result.updated) == ["app-0", "app-1"]
        for machine in client.live_machines():
            assert machine.config.image == OLD_IMAGE
            assert machine.config.metadata[METADATA_RELEASE_ID] == "rel_9"

    @pytest.mark.asyncio
    async def test_only_one_deployment_at_a_time(self, make_template, seed, make_config):
        client = InMemoryFleetClient(failure_injector=FailureInjector(delay=0.01))
        seed(client, "app", make_template(), 2)
        engine = DeploymentEngine(client, {"app": make_template()}, make_config())

        first = asyncio.create_task(engine.deploy_machines_app())
        await asyncio.sleep(0)
        with pytest.raises(RuntimeError, match="already in progress"):
            await engine.deploy_machines_app()
        result = await first
        assert result.success


class TestReleaseCommandGate:
    """Nothing changes unless the release command succeeds."""

    @pytest.mark.asyncio
    async def test_runs_before_any_lease(self, client, make_template, seed, make_config):
        seed(client, "app", make_template(), 2)
        engine = DeploymentEngine(client, {"app": make_template()}, make_config(release_command="bin/migrate"))

        result = await engine.deploy_machines_app()
        assert result.success
        assert first_call(client, "launch") < first_call(client, "acquire_lease")
        assert client.machines["m00001"].config.command == ["bin/migrate"]

    @pytest.mark.asyncio
    async def test_failure_aborts_before_touching_machines(self, make_template, seed, make_config):
        client = InMemoryFleetClient(command_exit_codes={"bin/migrate": 1},
                                     command_logs={"bin/migrate": ["migration 42 failed"]})
        seed(client, "app", make_template(), 2)
        engine = DeploymentEngine(client, {"app": make_template()}, make_config(release_command="bin/migrate"))

        with pytest.raises(ReleaseCommandError) as excinfo:
            await engine.deploy_machines_app()
        assert excinfo.value.log_lines == ["migration 42 failed"]
        assert client.mutating_calls == [("launch", "m00001")]
        assert client.calls_for("acquire_lease") == []
        assert not engine.result.success
        assert engine.result.aborted_reason.startswith("release command failed")

    @pytest.mark.asyncio
    async def test_release_command_needs_a_template(self, client, make_template, seed, make_config):
        seed(client, "app", make_template(), 1)
        engine = DeploymentEngine(client, {}, make_config(release_command="bin/migrate"))

        with pytest.raises(ConfigurationError, match="release command"):
            await engine.deploy_machines_app()
        assert client.mutating_calls == []


class TestLeasesAndFailures:
    """Leases never outlive the deployment."""

    @pytest.mark.asyncio
    async def test_lease_conflict_fails_fast(self, client, make_template, seed, make_config):
        seed(client, "app", make_template(), 3)
        other = await client.acquire_lease("app-2", 30)
        engine = DeploymentEngine(client, {"app": make_template()}, make_config())

        with pytest.raises(LeaseConflictError, match="app-2"):
            await engine.deploy_machines_app()
        assert client.mutating_calls == []
        assert list(client.leases) == ["app-2"]
        assert client.leases["app-2"].nonce == other.nonce

    @pytest.mark.asyncio
    async def test_leases_released_after_failure(self, make_template, seed, make_config):
        client = InMemoryFleetClient(unhealthy_images={NEW_IMAGE})
        seed(client, "app", make_template(), 3)
        engine = DeploymentEngine(client, {"app": make_template()}, make_config(wait_timeout=0.3))

        with pytest.raises(HealthCheckTimeoutError):
            await engine.deploy_machines_app()
        assert client.leases == {}
        assert engine.result.failed == ["app-0"]
        assert engine.result.history[-1]["event"] == "abort"

    @pytest.mark.asyncio
    async def test_cancellation_releases_leases(self, make_template, seed, make_config):
        client = InMemoryFleetClient(hanging_images={NEW_IMAGE})
        seed(client, "app", make_template(), 3)
        engine = DeploymentEngine(client, {"app": make_template()}, make_config(wait_timeout=30))

        task = asyncio.create_task(engine.deploy_machines_app())
        while "app-0" not in client.calls_for("update"):
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert client.leases == {}
        assert engine.result.aborted_reason == "deployment cancelled"

    @pytest.mark.asyncio
    async def test_retries_the_update_stage(self, make_template, seed, make_config):
        client = InMemoryFleetClient(failure_injector=FailureInjector(fail_attempts={("update", "app-0"): 1}))
        seed(client, "app", make_template(), 2)
        engine = DeploymentEngine(client, {"app": make_template()}, make_config(deploy_retries=1))

        result = await engine.deploy_machines_app()
        assert result.success
        assert sorted(result.updated) == ["app-0", "app-1"]
        assert result.failed == []
        assert client.calls_for("update").count("app-0") == 2

    @pytest.mark.asyncio
    async def test_without_retries_the_error_surfaces(self, make_template, seed, make_config):
        client = InMemoryFleetClient(failure_injector=FailureInjector(fail_attempts={("update", "app-0"): 1}))
        seed(client, "app", make_template(), 2)
        engine = DeploymentEngine(client, {"app": make_template()}, make_config())

        with pytest.raises(FleetAPIError) as excinfo:
            await engine.deploy_machines_app()
        assert excinfo.value.machine_id == "app-0"
        assert "app-0" in engine.result.aborted_reason
        assert engine.result.failed == ["app-0"]
        assert client.calls_for("update") == ["app-0"]

    @pytest.mark.asyncio
    async def test_retry_launches_a_replacement_that_never_came_up(self, make_template, seed, make_config):
        injector = FailureInjector(
            fail_attempts={("update", "app-0"): 1, ("launch", "*"): 1},
            errors={("update", "app-0"): FleetAPIError(412, "no room on host", "insufficient_capacity")},
        )
        client = InMemoryFleetClient(failure_injector=injector)
        seed(client, "app", make_template(), 2)
        engine = DeploymentEngine(client, {"app": make_template()}, make_config(deploy_retries=1))

        result = await engine.deploy_machines_app()
        assert result.success
        assert result.replaced == ["app-0"]
        assert result.updated == ["app-1"]
        assert result.failed == []
        # The first launch failed after app-0 was destroyed; the retry only launches
        live = client.live_machines()
        assert sorted(m.id for m in live) == ["app-1", "m00002"]
        assert all(m.config.image == NEW_IMAGE for m in live)
        assert client.calls_for("destroy") == ["app-0"]
        assert client.leases == {}


class TestVolumes:
    @pytest.mark.asyncio
    async def test_missing_volume_fails_planning(self, client, make_template, make_config):
        template = make_template(mounts=[Mount(name="data", path="/data")])
        engine = DeploymentEngine(client, {"db": template}, make_config(primary_region="ord"))

        with pytest.raises(PlanError):
            await engine.deploy_machines_app()
        assert client.calls_for("launch") == []

    @pytest.mark.asyncio
    async def test_provisioning_creates_the_volume(self, client, make_template, make_config):
        template = make_template(mounts=[Mount(name="data", path="/data", size_gb=5)])
        engine = DeploymentEngine(client, {"db": template},
                                  make_config(primary_region="ord", provision_volumes=True))

        result = await engine.deploy_machines_app()
        assert len(result.created) == 1
        volume = list(client.volumes.values())[0]
        assert volume.size_gb == 5
        assert volume.region == "ord"
        assert volume.attached_machine_id == result.created[0]

    @pytest.mark.asyncio
    async def test_free_volume_is_reused(self, client, make_template, make_config):
        client.add_volume(Volume(id="vol_old", name="data", region="ord"))
        template = make_template(mounts=[Mount(name="data", path="/data")])
        engine = DeploymentEngine(client, {"db": template},
                                  make_config(primary_region="ord", provision_volumes=True))

        result = await engine.deploy_machines_app()
        assert list(client.volumes) == ["vol_old"]
        assert client.volumes["vol_old"].attached_machine_id == result.created[0]


class TestCanary:
    """One throwaway machine per group proves the release before the rollout."""

    @pytest.mark.asyncio
    async def test_canary_is_checked_and_destroyed_first(self, client, make_template, seed, make_config):
        machines = seed(client, "app", make_template(), 2)
        machines[1].config.guest = Guest(cpus=4, memory_mb=4096)
        engine = DeploymentEngine(client, {"app": make_template()}, make_config(strategy="canary"))

        result = await engine.deploy_machines_app()
        assert result.success
        assert sorted(result.updated) == ["app-0", "app-1"]
        assert result.created == []

        canary = client.machines["m00001"]
        assert canary.config.metadata[METADATA_CANARY] == "true"
        assert canary.config.image == NEW_IMAGE
        assert canary.config.skip_dns_registration
        assert canary.config.guest.memory_mb == 4096
        assert canary.region == "ord"
        assert canary.state == MachineState.DESTROYED
        assert first_call(client, "launch") < first_call(client, "update")
        assert client.leases == {}

    @pytest.mark.asyncio
    async def test_unhealthy_canary_stops_the_deploy(self, make_template, seed, make_config):
        client = InMemoryFleetClient(unhealthy_images={NEW_IMAGE})
        seed(client, "app", make_template(), 2)
        engine = DeploymentEngine(client, {"app": make_template()},
                                  make_config(strategy="canary", wait_timeout=0.3))

        with pytest.raises(HealthCheckTimeoutError, match="m00001"):
            await engine.deploy_machines_app()
        assert client.calls_for("update") == []
        # Left running for inspection
        assert engine.result.hanging_machines == ["m00001"]
        assert client.machines["m00001"].state == MachineState.STARTED
        assert client.leases == {}

    @pytest.mark.asyncio
    async def test_first_deploy_has_no_canary(self, client, make_template, make_config):
        engine = DeploymentEngine(client, {"web": make_template()},
                                  make_config(strategy="canary", primary_region="ord"))

        result = await engine.deploy_machines_app()
        assert len(result.created) == 1
        assert client.calls_for("launch") == result.created
        assert METADATA_CANARY not in client.machines[result.created[0]].config.metadata
