import copy
from dataclasses import dataclass, field, asdict, fields
from enum import Enum

from .errors import ConfigurationError

DEFAULT_PROCESS_GROUP = "app"
METADATA_PROCESS_GROUP = "process_group"
METADATA_RELEASE_ID = "release_id"
METADATA_RELEASE_VERSION = "release_version"
METADATA_DEPLOYER_VERSION = "deployer_version"
METADATA_BLUEGREEN_TAG = "bluegreen_deployment"
METADATA_SAFE_TO_DESTROY = "bluegreen_safe_to_destroy"
METADATA_CANARY = "canary"

DEPLOYER_VERSION = "0.3.0"
SERVICE_CHECK_PREFIX = "servicecheck-"


class MachineState(str, Enum):
    CREATED = "created"
    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"
    STOPPED = "stopped"
    REPLACING = "replacing"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"
    SUSPENDED = "suspended"


class HostStatus(str, Enum):
    OK = "ok"
    UNREACHABLE = "unreachable"


class Disposition(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"


class CheckStatus(str, Enum):
    PASSING = "passing"
    WARNING = "warning"
    CRITICAL = "critical"


def _build(cls, data):
    """Instantiate a dataclass from a mapping, ignoring unknown keys"""
    if data is None:
        return None
    if isinstance(data, cls):
        return data
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


@dataclass
class HealthCheck:
    type: str = "tcp"  # tcp or http
    port: int = None
    interval: float = None  # Seconds between runs
    timeout: float = None
    grace_period: float = None  # Seconds before the first run counts
    path: str = None
    method: str = None


@dataclass
class Service:
    internal_port: int = 8080
    protocol: str = "tcp"
    checks: list = field(default_factory=list)  # HealthCheck
    autostop: bool = False
    autostart: bool = False

    @classmethod
    def from_dict(cls, data):
        service = _build(cls, data)
        service.checks = [_build(HealthCheck, c) for c in service.checks]
        return service


@dataclass
class Mount:
    volume: str = ""  # Volume id
    name: str = ""  # Volume name
    path: str = ""
    size_gb: int = None


@dataclass
class Guest:
    cpus: int = 1
    memory_mb: int = 256
    cpu_kind: str = "shared"


@dataclass
class MachineConfig:
    """Desired configuration of one machine"""
    image: str = ""
    command: list = field(default_factory=list)
    env: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    services: list = field(default_factory=list)  # Service
    checks: dict = field(default_factory=dict)  # name -> HealthCheck
    mounts: list = field(default_factory=list)  # Mount
    guest: Guest = field(default_factory=Guest)
    auto_destroy: bool = False
    restart_policy: str = "always"
    standbys: list = field(default_factory=list)  # Machine ids this one stands by for
    skip_dns_registration: bool = False

    @property
    def process_group(self):
        return self.metadata.get(METADATA_PROCESS_GROUP) or DEFAULT_PROCESS_GROUP

    def copy(self):
        return copy.deepcopy(self)

    def comparable(self):
        data = self.to_dict()
        data["metadata"].pop(METADATA_DEPLOYER_VERSION, None)
        return data

    def same_as(self, other):
        """Equality ignoring the deployer version stamp"""
        return other is not None and self.comparable() == other.comparable()

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        config = _build(cls, data)
        config.command = list(config.command or [])
        config.env = dict(config.env or {})
        config.metadata = dict(config.metadata or {})
        config.services = [Service.from_dict(s) for s in config.services or []]
        config.checks = {name: _build(HealthCheck, c) for name, c in (config.checks or {}).items()}
        config.mounts = [_build(Mount, m) for m in config.mounts or []]
        config.guest = _build(Guest, config.guest) or Guest()
        return config


@dataclass
class CheckResult:
    name: str
    status: CheckStatus = CheckStatus.CRITICAL
    output: str = ""

    @property
    def is_service_check(self):
        return self.name.startswith(SERVICE_CHECK_PREFIX)


@dataclass
class MachineEvent:
    type: str  # launch, start, exit, update, destroy...
    status: str = ""
    timestamp: float = 0.0
    exit_code: int = None


@dataclass
class Machine:
    id: str
    region: str = ""
    state: str = MachineState.CREATED
    config: MachineConfig = field(default_factory=MachineConfig)
    instance_id: str = ""  # Changes on every config version
    host_status: str = HostStatus.OK
    checks: list = field(default_factory=list)  # CheckResult
    events: list = field(default_factory=list)  # MachineEvent, oldest first
    lease_nonce: str = None  # Only while a lease is held
    name: str = ""

    @property
    def process_group(self):
        return self.config.process_group

    @property
    def image_ref(self):
        return self.config.image

    def _count(self, checks):
        passing = sum(1 for c in checks if c.status == CheckStatus.PASSING)
        return passing, len(checks)

    def health_status(self):
        """(passing, total) over every check"""
        return self._count(self.checks)

    def top_level_health_status(self):
        return self._count([c for c in self.checks if not c.is_service_check])

    def latest_event(self, event_type):
        for event in reversed(self.events):
            if event.type == event_type:
                return event
        return None

    def latest_event_after(self, event_type, after_type):
        """Newest event of event_type that happened after the newest after_type event"""
        for event in reversed(self.events):
            if event.type == event_type:
                return event
            if event.type == after_type:
                return None
        return None

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        machine = _build(cls, data)
        machine.config = MachineConfig.from_dict(machine.config or {})
        machine.checks = [_build(CheckResult, c) for c in machine.checks or []]
        machine.events = [_build(MachineEvent, e) for e in machine.events or []]
        return machine


@dataclass
class Lease:
    nonce: str
    expires_at: float  # Epoch seconds
    owner: str = ""
    version: str = ""  # Machine instance id when the lease was taken

    @classmethod
    def from_dict(cls, data):
        return _build(cls, data)


@dataclass
class Volume:
    id: str
    name: str
    region: str = ""
    size_gb: int = 1
    attached_machine_id: str = None
    host_status: str = HostStatus.OK
    state: str = "created"

    @classmethod
    def from_dict(cls, data):
        return _build(cls, data)


@dataclass
class LaunchInput:
    """Everything needed to create or update a machine"""
    config: MachineConfig
    region: str = ""
    id: str = None  # Set when updating an existing machine
    name: str = ""
    lease_ttl: float = None  # Lease the new machine at creation
    skip_launch: bool = False  # Create or update without starting
    skip_service_registration: bool = False
    requires_replacement: bool = False

    def to_dict(self):
        return asdict(self)


@dataclass
class PlanEntry:
    old_machine: Machine = None
    launch_input: LaunchInput = None
    disposition: Disposition = Disposition.UPDATE

    @property
    def machine_id(self):
        if self.old_machine is not None:
            return self.old_machine.id
        return self.launch_input.id if self.launch_input else None

    @property
    def process_group(self):
        if self.launch_input is not None:
            return self.launch_input.config.process_group
        return self.old_machine.process_group


@dataclass
class DeploymentPlan:
    entries: list = field(default_factory=list)  # PlanEntry
    groups_to_remove: dict = field(default_factory=dict)  # group -> machine count
    groups_needing_machines: list = field(default_factory=list)

    def by_disposition(self, disposition):
        return [e for e in self.entries if e.disposition == disposition]

    @property
    def creates(self):
        return self.by_disposition(Disposition.CREATE)

    @property
    def updates(self):
        return self.by_disposition(Disposition.UPDATE)

    @property
    def replaces(self):
        return self.by_disposition(Disposition.REPLACE)

    @property
    def destroys(self):
        return self.by_disposition(Disposition.DESTROY)

    @property
    def is_noop(self):
        return not self.entries

    def summary(self):
        return {d.value: len(self.by_disposition(d)) for d in Disposition}


@dataclass
class UpdateEntry:
    """A leasable machine and the launch input it should converge to"""
    leasable_machine: object
    launch_input: LaunchInput
    replacement: object = None  # Machine launched after the old one was destroyed


STRATEGIES = ("rolling", "canary", "bluegreen", "immediate")


@dataclass
class DeploymentConfig:
    """Configuration for deployment behavior"""
    strategy: str = "rolling"
    max_unavailable: float = 0.33  # Absolute count when >= 1, fraction of a group otherwise
    max_concurrent: int = 16  # Parallel machine operations outside rolling waves
    wait_timeout: float = 300.0  # Seconds to wait for a machine state or health
    lease_timeout: float = 13.0  # Lease TTL in seconds
    release_command_timeout: float = 300.0
    skip_health_checks: bool = False
    skip_smoke_checks: bool = False
    smoke_check_window: float = 10.0  # Seconds a machine must stay up after an update
    skip_release_command: bool = False
    restart_only: bool = False  # Only restamp release metadata on existing machines
    update_only: bool = False  # Never create machines for new groups
    dry_run: bool = False
    release_command: str = None
    seed_command: str = None  # Runs after the release command, same rules
    test_commands: dict = field(default_factory=dict)  # group -> commands run after each update
    fail_on_test_failure: bool = True
    increased_availability: bool = False  # Two machines for new groups with services
    provision_volumes: bool = False
    volume_initial_size_gb: int = 1
    only_regions: list = field(default_factory=list)
    exclude_regions: list = field(default_factory=list)
    only_machines: list = field(default_factory=list)
    exclude_machines: list = field(default_factory=list)
    process_groups: list = field(default_factory=list)  # Limit the deploy to these groups
    primary_region: str = None
    release_id: str = None
    release_version: int = 0
    deploy_retries: int = 0  # Extra attempts at the update stage
    stop_signal: str = None
    bluegreen_wait_before_cordon: float = 10.0
    bluegreen_wait_before_stop: float = 10.0

    def __post_init__(self):
        if self.strategy not in STRATEGIES:
            raise ConfigurationError(f"unknown deployment strategy '{self.strategy}'")
        if self.max_unavailable is None or self.max_unavailable <= 0:
            raise ConfigurationError("Invalid --max-unavailable value, must be greater than 0")
        if self.wait_timeout <= 0:
            raise ConfigurationError("wait_timeout must be > 0")
        if self.lease_timeout <= 1:
            raise ConfigurationError("lease_timeout must be > 1 second")
        if self.release_command_timeout <= 0:
            raise ConfigurationError("release_command_timeout must be > 0")
        if self.deploy_retries < 0:
            raise ConfigurationError("deploy_retries must be >= 0")
        self.max_concurrent = max(1, self.max_concurrent)

    @property
    def lease_delay_between(self):
        """Seconds between background lease refreshes"""
        return (self.lease_timeout - 1) / 3

    @classmethod
    def from_dict(cls, data):
        names = {f.name for f in fields(cls)}
        unknown = set(data) - names
        if unknown:
            raise ConfigurationError(f"unknown deployment options: {', '.join(sorted(unknown))}")
        return cls(**data)


@dataclass
class DeploymentResult:
    """Results from a deployment run"""
    success: bool
    created: list = field(default_factory=list)  # Machine ids launched for new groups
    updated: list = field(default_factory=list)  # Machine ids updated in place
    replaced: list = field(default_factory=list)  # Old machine ids replaced by new ones
    destroyed: list = field(default_factory=list)
    failed: list = field(default_factory=list)
    skipped: list = field(default_factory=list)  # Machine ids already up to date
    aborted_reason: str = None
    rolled_back: bool = False
    hanging_machines: list = field(default_factory=list)  # Need manual cleanup
    history: list = field(default_factory=list)  # Overall deployment events
    per_machine_history: dict = field(default_factory=dict)

    def record(self, event, **details):
        entry = {"event": event}
        entry.update(details)
        self.history.append(entry)
        return entry

    def record_machine(self, machine_id, event, **details):
        entry = {"event": event}
        entry.update(details)
        self.per_machine_history.setdefault(machine_id, []).append(entry)

    def to_dict(self):
        return asdict(self)
