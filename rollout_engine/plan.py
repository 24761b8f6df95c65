"""
Diffing the running fleet against the desired one.

compute_plan() groups observed machines by their process group tag and
classifies each one against the desired per-group templates:

  * groups that are no longer desired      -> destroy every machine
  * desired groups without enough machines -> create
  * machines whose config changed          -> update in place, or replace
                                              when the change cannot be
                                              applied to the running machine
  * machines already converged             -> nothing
"""

from .errors import PlanError
from .logger import get_logger
from .models import (
    DEFAULT_PROCESS_GROUP, DEPLOYER_VERSION, HostStatus, METADATA_DEPLOYER_VERSION,
    METADATA_PROCESS_GROUP, METADATA_RELEASE_ID, METADATA_RELEASE_VERSION,
    DeploymentPlan, Disposition, LaunchInput, MachineState, PlanEntry,
)

logger = get_logger("plan")


class VolumePool:
    """Unattached volumes available to new or replaced machines"""

    def __init__(self, volumes=()):
        self._free = {}
        for volume in volumes:
            if volume.attached_machine_id or volume.host_status == HostStatus.UNREACHABLE:
                continue
            self._free.setdefault((volume.name, volume.region), []).append(volume)

    def available(self, name, region):
        return len(self._free.get((name, region), []))

    def pop(self, name, region):
        free = self._free.get((name, region))
        if not free:
            return None
        return free.pop(0)

    def add(self, volume):
        self._free.setdefault((volume.name, volume.region), []).append(volume)


def normalize_templates(templates, default_group=DEFAULT_PROCESS_GROUP):
    """An unnamed template becomes the default group"""
    normalized = {}
    for name, template in templates.items():
        normalized[name or default_group] = template
    return normalized


def stamp_release(config, release_id=None, release_version=0):
    if release_id:
        config.metadata[METADATA_RELEASE_ID] = release_id
    if release_version:
        config.metadata[METADATA_RELEASE_VERSION] = str(release_version)
    config.metadata[METADATA_DEPLOYER_VERSION] = DEPLOYER_VERSION
    return config


def render_config(template, group, image=None, release_id=None, release_version=0):
    """Fresh desired config for one machine of group"""
    config = template.copy()
    if image:
        config.image = image
    config.metadata[METADATA_PROCESS_GROUP] = group
    return stamp_release(config, release_id, release_version)


def group_machines(machines, default_group=DEFAULT_PROCESS_GROUP):
    groups = {}
    for machine in machines:
        group = machine.config.metadata.get(METADATA_PROCESS_GROUP) or default_group
        groups.setdefault(group, []).append(machine)
    return groups


def should_skip_launch(machine):
    """Machines the platform starts on demand, and standbys, stay stopped"""
    if machine.config.standbys:
        return True
    if machine.state not in (MachineState.STOPPED, MachineState.SUSPENDED):
        return False
    return any(s.autostop or s.autostart for s in machine.config.services)


def _mount_key(mount):
    return mount.name, mount.path


def launch_input_for_update(machine, desired, volumes):
    """Pair an existing machine with its desired config.

    Returns (LaunchInput, disposition), or (None, None) when the machine
    already runs the desired config.
    """
    config = desired.copy()
    replace = False
    unreachable = machine.host_status == HostStatus.UNREACHABLE
    current_mounts = machine.config.mounts
    desired_mounts = config.mounts

    if current_mounts and desired_mounts:
        current, wanted = current_mounts[0], desired_mounts[0]
        if current.name != wanted.name or unreachable:
            replace = True
            wanted.volume = _pop_volume(volumes, wanted.name, machine)
        else:
            # Same volume, only the path may move
            wanted.volume = current.volume
            if wanted.size_gb is None:
                wanted.size_gb = current.size_gb
    elif desired_mounts:
        replace = True
        desired_mounts[0].volume = _pop_volume(volumes, desired_mounts[0].name, machine)
    elif current_mounts:
        replace = True

    if unreachable:
        replace = True

    if not replace and config.same_as(machine.config):
        return None, None

    launch_input = LaunchInput(
        config=config,
        region=machine.region,
        id=machine.id,
        name=machine.name,
        skip_launch=should_skip_launch(machine),
        requires_replacement=replace,
    )
    return launch_input, Disposition.REPLACE if replace else Disposition.UPDATE


def _pop_volume(volumes, name, machine):
    volume = volumes.pop(name, machine.region)
    if volume is None:
        raise PlanError(
            f"machine {machine.id} needs an unattached volume named '{name}' in region "
            f"{machine.region} to be replaced, and none is available"
        )
    return volume.id


def _create_count(template, increased_availability):
    if increased_availability and template.services and not template.mounts:
        return 2
    return 1


def _create_entries(group, template, count, region, volumes):
    entries = []
    for _ in range(count):
        config = template.copy()
        if config.mounts:
            mount = config.mounts[0]
            volume = volumes.pop(mount.name, region)
            if volume is None:
                raise PlanError(
                    f"process group '{group}' needs an unattached volume named '{mount.name}' "
                    f"in region {region}, create one or enable volume provisioning"
                )
            mount.volume = volume.id
        entries.append(PlanEntry(None, LaunchInput(config=config, region=region), Disposition.CREATE))
    return entries


def compute_plan(observed, templates, default_group=DEFAULT_PROCESS_GROUP, image=None, volumes=None,
                 release_id=None, release_version=0, increased_availability=False,
                 desired_counts=None, region=""):
    """Classify every observed machine and every missing one"""
    templates = normalize_templates(templates, default_group)
    desired_counts = desired_counts or {}
    volumes = volumes if isinstance(volumes, VolumePool) else VolumePool(volumes or ())
    observed = [m for m in observed if m.state != MachineState.DESTROYED]
    groups = group_machines(observed, default_group)
    plan = DeploymentPlan()

    for group in sorted(groups):
        if group in templates:
            continue
        plan.groups_to_remove[group] = len(groups[group])
        for machine in groups[group]:
            plan.entries.append(PlanEntry(machine, None, Disposition.DESTROY))

    for group in sorted(templates):
        desired = render_config(templates[group], group, image, release_id, release_version)
        existing = sorted(groups.get(group, []), key=lambda m: m.id)

        for machine in existing:
            launch_input, disposition = launch_input_for_update(machine, desired, volumes)
            if launch_input is None:
                logger.debug(f"machine {machine.id} [{group}] is up to date")
                continue
            plan.entries.append(PlanEntry(machine, launch_input, disposition))

        if existing:
            wanted = desired_counts.get(group, len(existing))
        else:
            wanted = desired_counts.get(group, _create_count(desired, increased_availability))
        missing = wanted - len(existing)
        if missing > 0:
            plan.groups_needing_machines.append(group)
            plan.entries.extend(_create_entries(group, desired, missing, region, volumes))

    logger.info(f"Plan: {plan.summary()}")
    return plan


def validate_volumes(observed, templates, default_group=DEFAULT_PROCESS_GROUP):
    """Refuse to orphan volumes: every group with mounted machines must still declare the mount"""
    templates = normalize_templates(templates, default_group)
    for group, machines in group_machines(observed, default_group).items():
        template = templates.get(group)
        if template is None:
            continue
        for machine in machines:
            if machine.config.mounts and not template.mounts:
                raise PlanError(
                    f"machine {machine.id} [{group}] has a volume mounted but the app config "
                    f"does not declare a mount for it"
                )
