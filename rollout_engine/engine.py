import asyncio

from .commands import CommandRunner
from .errors import AbortedError, ConfigurationError, is_unrecoverable
from .lease import LeasableMachine
from .logger import get_logger
from .machine_set import MachineSet
from .models import (
    DEFAULT_PROCESS_GROUP, METADATA_CANARY, DeploymentConfig, DeploymentResult, LaunchInput, UpdateEntry,
)
from .plan import (
    VolumePool, compute_plan, normalize_templates, render_config, should_skip_launch, stamp_release,
    validate_volumes,
)
from .pool import WorkerPool
from .status import LoggingStatusLogger, StatusLines
from .strategies import select_strategy


class DeploymentEngine:
    """Reconciles the fleet with the desired per-group machine templates"""

    def __init__(self, client, templates, config=None, image=None, status=None, abort_event=None,
                 desired_counts=None):
        self.client = client
        self.templates = normalize_templates(templates)
        self.config = config if config else DeploymentConfig()
        self.image = image
        self.status = StatusLines(status if status else LoggingStatusLogger())
        self.abort_event = abort_event if abort_event else asyncio.Event()
        self.desired_counts = desired_counts or {}
        self.runner = CommandRunner(client, self.config, self.status)
        self.logger = get_logger("engine")
        self.result = None
        self._in_progress = False

    def abort(self):
        """Stop a running deployment; in-flight waits are cancelled and cleanup runs"""
        self.logger.warning("Abort requested, cancelling in-flight operations")
        self.abort_event.set()

    def _check_abort(self):
        if self.abort_event.is_set():
            raise AbortedError()

    def _filters_active(self):
        cfg = self.config
        return any([cfg.only_regions, cfg.exclude_regions, cfg.only_machines, cfg.exclude_machines,
                    cfg.process_groups])

    def _filter_machines(self, machines):
        """Apply region, machine and process group filters"""
        cfg = self.config
        kept = []
        for machine in machines:
            if cfg.only_regions and machine.region not in cfg.only_regions:
                continue
            if machine.region in cfg.exclude_regions:
                continue
            if cfg.only_machines and machine.id not in cfg.only_machines:
                continue
            if machine.id in cfg.exclude_machines:
                continue
            if cfg.process_groups and machine.process_group not in cfg.process_groups:
                continue
            kept.append(machine)
        if len(kept) != len(machines):
            self.logger.info(f"Filters selected {len(kept)} of {len(machines)} machines")
        return kept

    def _default_group(self):
        if DEFAULT_PROCESS_GROUP in self.templates:
            return DEFAULT_PROCESS_GROUP
        if not self.templates:
            raise ConfigurationError("a release command needs at least one process group template")
        return sorted(self.templates)[0]

    def _render(self, group):
        cfg = self.config
        return render_config(self.templates[group], group, self.image, cfg.release_id, cfg.release_version)

    async def plan_machines_app(self):
        """Compute the plan without touching anything"""
        observed = self._filter_machines(await self.client.list())
        volumes = await self.client.get_volumes()
        return self._compute_plan(observed, volumes)

    def _compute_plan(self, observed, volumes):
        cfg = self.config
        templates = self.templates
        if cfg.process_groups:
            templates = {g: t for g, t in templates.items() if g in cfg.process_groups}
        return compute_plan(
            observed, templates,
            image=self.image,
            volumes=volumes,
            release_id=cfg.release_id,
            release_version=cfg.release_version,
            increased_availability=cfg.increased_availability,
            desired_counts=self.desired_counts,
            region=cfg.primary_region or "",
        )

    async def deploy_machines_app(self):
        """Main deployment method: release command, leases, plan, then the strategy"""
        if self._in_progress:
            error_msg = "deployment already in progress"
            self.logger.error(error_msg)
            raise RuntimeError(error_msg)

        self._in_progress = True
        self.result = result = DeploymentResult(success=False)
        self.logger.info(f"Starting deployment (strategy={self.config.strategy}, "
                         f"restart_only={self.config.restart_only}, dry_run={self.config.dry_run})")
        try:
            if self.config.restart_only:
                await self._until_aborted(self._restart_machines_app(result))
            else:
                await self._until_aborted(self._deploy_machines_app(result))
        except (Exception, asyncio.CancelledError) as e:
            self._fail(result, e)
            raise
        finally:
            self._in_progress = False
            self.logger.debug("Deployment lock released")

        result.success = True
        self._dedupe(result)
        self.logger.info(f"SUCCESS: Deployment completed - {len(result.created)} created, "
                         f"{len(result.updated)} updated, {len(result.replaced)} replaced, "
                         f"{len(result.destroyed)} destroyed")
        return result

    async def _until_aborted(self, coro):
        """Run coro, cancelling it as soon as an abort is requested"""
        work = asyncio.ensure_future(coro)
        aborted = asyncio.ensure_future(self.abort_event.wait())
        try:
            await asyncio.wait({work, aborted}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            await asyncio.wait({work})
            raise
        finally:
            aborted.cancel()

        if work.done():
            return work.result()
        work.cancel()
        await asyncio.wait({work})
        if not work.cancelled() and work.exception() is not None:
            raise AbortedError() from work.exception()
        raise AbortedError()

    def _fail(self, result, err):
        if isinstance(err, asyncio.CancelledError):
            reason = "deployment cancelled"
        else:
            reason = str(err) or type(err).__name__
        result.success = False
        result.aborted_reason = reason
        result.record("abort", reason=reason, error=type(err).__name__)
        self._dedupe(result)
        self.logger.error(f"DEPLOYMENT FAILED: {reason}")
        suggestion = getattr(err, "suggestion", None)
        if suggestion:
            self.logger.error(suggestion)

    @staticmethod
    def _dedupe(result):
        for name in ("created", "updated", "replaced", "destroyed", "failed"):
            setattr(result, name, list(dict.fromkeys(getattr(result, name))))
        done = set(result.updated) | set(result.replaced)
        result.failed = [m for m in result.failed if m not in done]

    async def _deploy_machines_app(self, result):
        cfg = self.config
        observed = self._filter_machines(await self.client.list())
        volumes = await self.client.get_volumes()

        if not cfg.dry_run and self.runner.release_commands():
            self._check_abort()
            result.record("release_command")
            group = self._default_group()
            await self.runner.run_release_command(
                self._render(group),
                [m for m in observed if m.process_group == group],
                cfg.primary_region or "",
            )

        validate_volumes(observed, self.templates)

        machine_set = MachineSet(self.client, observed)
        if cfg.dry_run:
            plan = self._compute_plan(observed, volumes)
            result.record("dry_run", **plan.summary())
            result.skipped = self._untouched(observed, plan)
            self.logger.info(f"DRY RUN: would apply {plan.summary()}")
            return

        self._check_abort()
        result.record("acquire_leases", count=len(machine_set))
        await machine_set.acquire_leases(cfg.lease_timeout)
        try:
            machine_set.start_background_refresh(cfg.lease_timeout, cfg.lease_delay_between)

            if cfg.provision_volumes and not self._filters_active():
                volumes = await self._provision_volumes(observed, volumes)

            self._check_abort()
            plan = self._compute_plan([lm.machine for lm in machine_set], volumes)
            result.record("plan", **plan.summary())
            result.skipped = self._untouched(observed, plan)
            if plan.is_noop:
                self.logger.info("All machines already up to date")
                result.record("no_updates_needed", count=0)
                return

            if cfg.strategy == "canary" and observed:
                self._check_abort()
                await self._deploy_canaries(machine_set, result)

            if not self._filters_active():
                self._check_abort()
                await self._destroy_stale_groups(plan, machine_set, result)

                if not cfg.update_only:
                    self._check_abort()
                    await self._create_new_machines(plan, result)

            entries = [
                UpdateEntry(machine_set.get(e.old_machine.id), e.launch_input)
                for e in plan.updates + plan.replaces
            ]
            await self._run_strategy(entries, result)
        finally:
            await machine_set.release_leases()

    async def _restart_machines_app(self, result):
        cfg = self.config
        observed = self._filter_machines(await self.client.list())
        machine_set = MachineSet(self.client, observed)

        self._check_abort()
        result.record("acquire_leases", count=len(machine_set))
        await machine_set.acquire_leases(cfg.lease_timeout)
        try:
            machine_set.start_background_refresh(cfg.lease_timeout, cfg.lease_delay_between)
            entries = []
            for lm in machine_set:
                config = stamp_release(lm.machine.config.copy(), cfg.release_id, cfg.release_version)
                launch_input = LaunchInput(
                    config=config,
                    region=lm.machine.region,
                    id=lm.id,
                    name=lm.machine.name,
                    skip_launch=should_skip_launch(lm.machine),
                )
                entries.append(UpdateEntry(lm, launch_input))
            result.record("restart", count=len(entries))
            await self._run_strategy(entries, result)
        finally:
            await machine_set.release_leases()

    @staticmethod
    def _untouched(observed, plan):
        planned = {e.old_machine.id for e in plan.entries if e.old_machine is not None}
        return [m.id for m in observed if m.id not in planned]

    async def _provision_volumes(self, observed, volumes):
        """Create the volumes new groups need when none are free"""
        cfg = self.config
        region = cfg.primary_region or ""
        existing_groups = {m.process_group for m in observed}
        pool = VolumePool(volumes)
        volumes = list(volumes)
        for group in sorted(self.templates):
            template = self.templates[group]
            if group in existing_groups or not template.mounts:
                continue
            mount = template.mounts[0]
            wanted = self.desired_counts.get(group, 1)
            for _ in range(wanted - pool.available(mount.name, region)):
                size = mount.size_gb or cfg.volume_initial_size_gb
                self.logger.info(f"Creating volume {mount.name} ({size}GB) in {region or 'default region'} "
                                 f"for group {group}")
                volume = await self.client.create_volume(mount.name, region, size)
                pool.add(volume)
                volumes.append(volume)
        return volumes

    async def _destroy_stale_groups(self, plan, machine_set, result):
        if not plan.destroys:
            return
        for group, count in sorted(plan.groups_to_remove.items()):
            self.logger.info(f"Process group '{group}' is gone from the config, destroying {count} machines")
        targets = [machine_set.get(e.old_machine.id) for e in plan.destroys]
        result.record("destroy_stale_groups", groups=sorted(plan.groups_to_remove),
                      machines=[lm.id for lm in targets])
        await machine_set.remove_machines(targets, kill=True)
        for lm in targets:
            result.destroyed.append(lm.id)
            result.record_machine(lm.id, "destroyed")

    def _canary_guest(self, group, guest, machine_set):
        """The template's size, unless a running machine of the group was sized differently"""
        for lm in machine_set:
            machine = lm.machine
            if machine.process_group != group or machine.config.guest is None:
                continue
            if machine.config.guest != guest:
                return machine.config.guest
        return guest

    async def _deploy_canaries(self, machine_set, result):
        cfg = self.config
        launch_inputs = []
        for group in sorted(self.templates):
            if cfg.process_groups and group not in cfg.process_groups:
                continue
            if self.templates[group].mounts:
                self.logger.info(f"Skipping the canary for group {group}, its machines need a volume")
                continue
            config = self._render(group)
            config.metadata[METADATA_CANARY] = "true"
            config.skip_dns_registration = True
            config.guest = self._canary_guest(group, config.guest, machine_set)
            region = cfg.primary_region or ""
            if not region:
                regions = [lm.machine.region for lm in machine_set if lm.process_group == group]
                region = regions[0] if regions else ""
            launch_inputs.append(LaunchInput(config=config, region=region, skip_service_registration=True))
        if launch_inputs:
            await self._strategy(result).launch_canaries(launch_inputs, cfg)

    async def _create_new_machines(self, plan, result):
        if not plan.creates:
            return
        cfg = self.config
        strategy = self._strategy(result)
        result.record("create_machines", groups=list(plan.groups_needing_machines), count=len(plan.creates))
        pool = WorkerPool(cfg.max_concurrent, cancel_on_error=True, name="create-machines")
        for entry in plan.creates:
            pool.go(self._create_machine, entry.launch_input, strategy, result)
        await pool.wait()

    async def _create_machine(self, launch_input, strategy, result):
        cfg = self.config
        launch_input.lease_ttl = cfg.lease_timeout
        machine = await self.client.launch(launch_input)
        lm = LeasableMachine(self.client, machine, nonce=machine.lease_nonce)
        line = self.status.line()
        line.running(f"Created machine {lm.formatted_id()}")
        result.created.append(machine.id)
        result.record_machine(machine.id, "created")
        try:
            if cfg.strategy != "immediate":
                await strategy.wait_for_machine(machine, launch_input, cfg)
        finally:
            await lm.release_lease()
        line.success(f"Machine {lm.formatted_id()} is ready")

    def _strategy(self, result):
        strategy_cls = select_strategy(self.config.strategy)
        return strategy_cls(self.client, self.runner, self.status, self.abort_event, result)

    async def _run_strategy(self, entries, result):
        cfg = self.config
        if not entries:
            return
        self.logger.info(f"Updating {len(entries)} machines with the {cfg.strategy} strategy")
        result.record("strategy_start", strategy=cfg.strategy, machines=[e.leasable_machine.id for e in entries])

        for attempt in range(1, cfg.deploy_retries + 2):
            self._check_abort()
            try:
                await self._strategy(result).apply(entries, cfg)
                break
            except Exception as e:
                if is_unrecoverable(e) or attempt > cfg.deploy_retries:
                    raise
                self.logger.warning(f"Update attempt {attempt} failed: {e}")
                # Replaced machines are done; destroyed ones without a replacement only need the launch
                entries = [entry for entry in entries if entry.replacement is None]
                for entry in entries:
                    if not entry.leasable_machine.destroyed:
                        await entry.leasable_machine.refresh()
                backoff_time = min((2 ** (attempt - 1)) * 1.0, 30.0)
                self.logger.info(f"Retrying in {backoff_time} seconds...")
                await asyncio.sleep(backoff_time)

        result.record("strategy_completed", strategy=cfg.strategy)
