import pytest

from rollout_engine.inmem import InMemoryFleetClient
from rollout_engine.models import (
    DeploymentConfig, HealthCheck, Machine, MachineConfig, MachineState, Service,
)
from rollout_engine.plan import render_config

OLD_IMAGE = "registry.example/app:v1"
NEW_IMAGE = "registry.example/app:v2"
BAD_IMAGE = "registry.example/app:broken"


def build_template(image=NEW_IMAGE, with_checks=True, with_services=True, mounts=None):
    checks = {}
    if with_checks:
        checks["http"] = HealthCheck(type="http", port=8080, path="/health", interval=0.05, grace_period=0)
    services = []
    if with_services:
        services.append(Service(internal_port=8080, checks=[HealthCheck(type="tcp", interval=0.05, grace_period=0)]))
    return MachineConfig(image=image, checks=checks, services=services, mounts=list(mounts or []))


def seed_machines(client, group, template, count, image=OLD_IMAGE, region="ord", prefix=None):
    machines = []
    for i in range(count):
        config = render_config(template, group, image)
        machine = Machine(id=f"{prefix or group}-{i}", region=region, state=MachineState.STARTED, config=config)
        machines.append(client.add_machine(machine))
    return machines


def fast_config(**overrides):
    options = {
        "wait_timeout": 2.0,
        "skip_smoke_checks": True,
        "bluegreen_wait_before_cordon": 0,
        "bluegreen_wait_before_stop": 0,
    }
    options.update(overrides)
    return DeploymentConfig(**options)


@pytest.fixture
def client():
    return InMemoryFleetClient()


@pytest.fixture
def make_template():
    return build_template


@pytest.fixture
def seed():
    return seed_machines


@pytest.fixture
def make_config():
    return fast_config
