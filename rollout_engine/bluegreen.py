"""
Blue/green deployments.

A complete green copy of the fleet is created next to the running blue one,
kept out of service discovery until every green machine is started and
passing its checks. Only then does green take traffic and blue get torn
down. Until green takes traffic any failure or abort destroys green and
leaves blue untouched.
"""

import asyncio
import math
import time

from .errors import AbortedError, DeploymentError, FleetAPIError, ValidationError
from .lease import LeasableMachine
from .models import (
    HealthCheck, LaunchInput, METADATA_BLUEGREEN_TAG, METADATA_SAFE_TO_DESTROY, MachineState,
)
from .pool import WorkerPool
from .strategies import Strategy
from .waiter import declared_checks, wait_for_healthy, wait_for_state

GREEN_SETTLE_DELAY = 0.3  # Seconds between creating green and polling it
CUSTOM_CHECK_PREFIX = "bg_deployments_"


class Stage:
    VALIDATE = "validate"
    CREATE_GREEN = "create green machines"
    WAIT_STARTED = "wait for green machines to start"
    WAIT_HEALTHY = "wait for green machines to be healthy"
    MARK_READY = "mark green machines ready for traffic"
    TAG_BLUE = "tag blue machines for deletion"
    CORDON_BLUE = "cordon blue machines"
    STOP_BLUE = "stop blue machines"
    WAIT_STOPPED = "wait for blue machines to stop"
    DESTROY_BLUE = "destroy blue machines"


class BlueGreenError(DeploymentError):
    def __init__(self, stage, cause, machine_ids=None):
        self.stage = stage
        self.cause = cause
        self.machine_ids = list(machine_ids or [])
        ids = f" ({', '.join(self.machine_ids)})" if self.machine_ids else ""
        super().__init__(f"failed to {stage}{ids}: {cause}")


def attach_custom_top_level_checks(config):
    """Copy every service check into a top-level check so green can be graded before it serves"""
    for service in config.services:
        for index, check in enumerate(service.checks):
            name = f"{CUSTOM_CHECK_PREFIX}{check.type or service.protocol}"
            if index:
                name = f"{name}_{index}"
            if name in config.checks:
                continue
            config.checks[name] = HealthCheck(
                type=check.type or service.protocol,
                port=check.port or service.internal_port,
                interval=check.interval,
                timeout=check.timeout,
                grace_period=check.grace_period,
                path=check.path,
                method=check.method,
            )
    return config


class BlueGreenStrategy(Strategy):
    name = "bluegreen"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.blue = []
        self.green = []
        self.hanging = []
        self.can_delete_green = True
        self.stage = None

    async def apply(self, entries, settings):
        self.blue = [e.leasable_machine for e in entries]
        self.green = []
        self.hanging = []
        self.can_delete_green = True
        try:
            await self._deploy(entries, settings)
        except BaseException as e:
            await self._rollback(e)
            raise
        finally:
            await self._release_green()
            if self.result is not None:
                self.result.hanging_machines.extend(self.hanging)

    def _stage(self, stage):
        self.check_abort()
        self.stage = stage
        self.logger.info(f"Blue/green: {stage}")
        if self.result is not None:
            self.result.record("bluegreen_stage", stage=stage)

    async def _deploy(self, entries, settings):
        self._stage(Stage.VALIDATE)
        self.validate(entries)

        self._stage(Stage.CREATE_GREEN)
        await self._run_stage(Stage.CREATE_GREEN, self._create_green(entries, settings))
        await asyncio.sleep(GREEN_SETTLE_DELAY)

        self._stage(Stage.WAIT_STARTED)
        await self._run_stage(Stage.WAIT_STARTED, self._for_each_green(
            settings, lambda lm: wait_for_state(self.client, lm.machine, MachineState.STARTED,
                                                settings.wait_timeout)))

        self._stage(Stage.WAIT_HEALTHY)
        await self._run_stage(Stage.WAIT_HEALTHY, self._for_each_green(
            settings, lambda lm: wait_for_healthy(self.client, lm.machine, settings.wait_timeout,
                                                  top_level_only=True)))

        self._stage(Stage.MARK_READY)
        await self._run_stage(Stage.MARK_READY, self._for_each_green(settings, lambda lm: lm.uncordon()))
        self.can_delete_green = False
        if self.result is not None:
            self.result.created.extend(lm.id for lm in self.green)

        self._stage(Stage.TAG_BLUE)
        await self._best_effort(Stage.TAG_BLUE, settings,
                                lambda lm: lm.set_metadata(METADATA_SAFE_TO_DESTROY, "true"))

        await asyncio.sleep(settings.bluegreen_wait_before_cordon)
        self._stage(Stage.CORDON_BLUE)
        await self._best_effort(Stage.CORDON_BLUE, settings, lambda lm: lm.cordon())

        await asyncio.sleep(settings.bluegreen_wait_before_stop)
        self._stage(Stage.STOP_BLUE)
        await self._best_effort(Stage.STOP_BLUE, settings, lambda lm: lm.stop(settings.stop_signal))

        self._stage(Stage.WAIT_STOPPED)
        await self._best_effort(Stage.WAIT_STOPPED, settings, lambda lm: wait_for_state(
            self.client, lm.machine, MachineState.STOPPED, settings.wait_timeout))

        self._stage(Stage.DESTROY_BLUE)
        await self._destroy_blue(settings)

    def validate(self, entries):
        """Refuse to start without a health signal for every group, or on a mixed-image fleet"""
        missing = set()
        for entry in entries:
            config = attach_custom_top_level_checks(entry.launch_input.config)
            if config.mounts:
                raise ValidationError(
                    f"blue/green deployments cannot move volumes, machine "
                    f"{entry.leasable_machine.formatted_id()} has one attached"
                )
            if not declared_checks(config):
                missing.add(config.process_group)
        if missing:
            raise ValidationError(
                f"blue/green deployments need health checks, process group(s) "
                f"{', '.join(sorted(missing))} define none"
            )

        images = {lm.machine.image_ref for lm in self.blue}
        if len(images) > 1:
            raise ValidationError(
                f"found multiple image versions among blue machines ({', '.join(sorted(images))}), "
                f"deploy with the rolling strategy first to converge them"
            )

    async def _run_stage(self, stage, coro):
        try:
            await coro
        except (asyncio.CancelledError, AbortedError, ValidationError, BlueGreenError):
            raise
        except Exception as e:
            raise BlueGreenError(stage, e, getattr(e, "machine_ids", None) or
                                 ([e.machine_id] if getattr(e, "machine_id", None) else None)) from e

    def _create_concurrency(self, count, settings):
        return max(1, min(math.ceil(count / 3), settings.max_concurrent))

    async def _create_green(self, entries, settings):
        tag = str(int(time.time()))
        pool = WorkerPool(self._create_concurrency(len(entries), settings), name="bluegreen-create")
        for entry in entries:
            pool.go(self._create_one, entry, tag, settings)
        await pool.wait()

    async def _create_one(self, entry, tag, settings):
        config = entry.launch_input.config.copy()
        config.metadata[METADATA_BLUEGREEN_TAG] = tag
        launch_input = LaunchInput(
            config=config,
            region=entry.leasable_machine.machine.region,
            skip_service_registration=True,
            lease_ttl=settings.lease_timeout,
        )
        machine = await self.client.launch(launch_input)
        green = LeasableMachine(self.client, machine, entry.leasable_machine.leases, nonce=machine.lease_nonce)
        green.start_background_refresh(settings.lease_timeout, settings.lease_delay_between)
        self.green.append(green)
        line = self.status.line()
        line.running(f"Created green machine {green.formatted_id()}")

    async def _for_each_green(self, settings, action):
        pool = WorkerPool(settings.max_concurrent, name="bluegreen-green")
        for lm in self.green:
            pool.go(action, lm)
        await pool.wait()

    async def _best_effort(self, stage, settings, action):
        """Run action on every blue machine; failures are logged and do not stop the rollout"""
        pool = WorkerPool(settings.max_concurrent, cancel_on_error=False, name=f"bluegreen-{stage}")
        for lm in self.blue:
            pool.go(self._logged, stage, lm, action)
        await pool.wait()

    async def _logged(self, stage, lm, action):
        try:
            await action(lm)
        except (FleetAPIError, DeploymentError) as e:
            self.logger.warning(f"failed to {stage} for {lm.formatted_id()}: {e}")

    async def _destroy_blue(self, settings):
        failed = []

        async def destroy(lm):
            try:
                await lm.destroy(kill=True)
            except (FleetAPIError, DeploymentError) as e:
                self.logger.warning(f"failed to destroy blue machine {lm.formatted_id()}: {e}")
                failed.append(lm.id)
                return
            if self.result is not None:
                self.result.replaced.append(lm.id)
                self.result.record_machine(lm.id, "destroyed", stage=Stage.DESTROY_BLUE)

        pool = WorkerPool(settings.max_concurrent, cancel_on_error=False, name="bluegreen-destroy")
        for lm in self.blue:
            pool.go(destroy, lm)
        await pool.wait()

        if failed:
            raise BlueGreenError(Stage.DESTROY_BLUE, "some blue machines could not be destroyed", sorted(failed))

    async def _rollback(self, err):
        if self.stage == Stage.DESTROY_BLUE and isinstance(err, BlueGreenError):
            self.hanging.extend(err.machine_ids)
            self.logger.error(f"Blue machines left behind, destroy them manually: {', '.join(err.machine_ids)}")
            return

        if not self.can_delete_green:
            # Green is serving; whatever blue is left needs a manual look
            leftover = [lm.id for lm in self.blue if not lm.destroyed]
            self.hanging.extend(leftover)
            if leftover:
                self.logger.error(f"Deployment stopped after green took traffic, blue machines left: "
                                  f"{', '.join(leftover)}")
            return

        if not self.green:
            return

        self.logger.warning(f"Rolling back: destroying {len(self.green)} green machines")
        if self.result is not None:
            self.result.rolled_back = True
            self.result.record("rollback", stage=self.stage, green=[lm.id for lm in self.green])
        outcomes = await asyncio.gather(*(lm.destroy(kill=True) for lm in self.green), return_exceptions=True)
        for lm, outcome in zip(self.green, outcomes):
            if isinstance(outcome, BaseException):
                self.logger.error(f"failed to destroy green machine {lm.formatted_id()}: {outcome}")
                self.hanging.append(lm.id)

    async def _release_green(self):
        held = [lm for lm in self.green if lm.has_lease()]
        for lm in self.green:
            lm.stop_background_refresh()
        outcomes = await asyncio.gather(*(lm.release_lease() for lm in held), return_exceptions=True)
        for lm, outcome in zip(held, outcomes):
            if isinstance(outcome, BaseException):
                self.logger.warning(f"failed to release lease on green machine {lm.id}: {outcome}")
