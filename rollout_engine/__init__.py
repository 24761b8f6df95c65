from .models import (
    Machine, MachineConfig, MachineState, Service, HealthCheck, Mount, Volume, Lease,
    LaunchInput, Disposition, PlanEntry, DeploymentPlan, UpdateEntry,
    DeploymentConfig, DeploymentResult,
)
from .engine import DeploymentEngine
from .fleet import FleetClient, HttpFleetClient, RetryingFleetClient
from .inmem import InMemoryFleetClient
from .failure import FailureInjector
from .batching import BatchAllocator
from .plan import compute_plan

__all__ = [
    "Machine", "MachineConfig", "MachineState", "Service", "HealthCheck", "Mount",
    "Volume", "Lease", "LaunchInput", "Disposition", "PlanEntry", "DeploymentPlan",
    "UpdateEntry", "DeploymentConfig", "DeploymentResult",
    "DeploymentEngine", "FleetClient", "HttpFleetClient", "RetryingFleetClient",
    "InMemoryFleetClient", "FailureInjector", "BatchAllocator", "compute_plan",
]
