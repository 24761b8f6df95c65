import shlex

from .errors import (
    CommandFailedError, FleetAPIError, ReleaseCommandError, UnrecoverableError, WaitTimeoutError,
)
from .logger import get_logger
from .models import LaunchInput, METADATA_PROCESS_GROUP, MachineState
from .waiter import wait_for_event_after, wait_for_state

LOG_TAIL_LINES = 100
EXIT_EVENT_TIMEOUT = 10.0


class CommandRunner:
    """Runs one-shot commands on short-lived, auto-destroying machines"""

    def __init__(self, client, config, status=None):
        self.client = client
        self.config = config
        self.status = status
        self.logger = get_logger("commands")

    @staticmethod
    def command_config(command, template, label):
        config = template.copy()
        config.command = shlex.split(command) if isinstance(command, str) else list(command)
        config.auto_destroy = True
        config.restart_policy = "no"
        config.services = []
        config.checks = {}
        config.mounts = []
        config.standbys = []
        config.skip_dns_registration = True
        config.metadata[METADATA_PROCESS_GROUP] = label
        return config

    async def run_once(self, command, template, region="", timeout=300.0, label="command", start_timeout=None):
        """Run command to completion and return its exit code (always 0, non-zero raises).

        start_timeout bounds the wait for the machine to start, timeout the
        wait for the command to finish.
        """
        config = self.command_config(command, template, label)
        machine = await self.client.launch(
            LaunchInput(config=config, region=region, skip_service_registration=True)
        )
        self.logger.info(f"Running {label} on machine {machine.id}: {command}")

        try:
            await wait_for_state(self.client, machine, MachineState.STARTED, start_timeout or timeout)
        except FleetAPIError as e:
            # Short commands can be done and gone before we look
            if not e.is_not_found:
                raise
        try:
            await wait_for_state(self.client, machine, MachineState.DESTROYED, timeout)
        except WaitTimeoutError as e:
            if label == "release_command":
                e.flag = "--release-command-timeout"
            raise

        exit_event = await wait_for_event_after(self.client, machine.id, "exit", "start", EXIT_EVENT_TIMEOUT)
        exit_code = exit_event.exit_code or 0
        if exit_code != 0:
            log_lines = await self._tail_logs(machine.id)
            raise CommandFailedError(machine.id, exit_code, log_lines)

        self.logger.info(f"{label} on machine {machine.id} completed successfully")
        return exit_code

    async def _tail_logs(self, machine_id):
        try:
            return await self.client.get_logs(machine_id, LOG_TAIL_LINES)
        except FleetAPIError as e:
            self.logger.warning(f"could not fetch logs for machine {machine_id}: {e}")
            return []

    @staticmethod
    def _largest_guest(machines):
        largest = None
        for machine in machines:
            guest = machine.config.guest
            if largest is None or (guest.memory_mb, guest.cpus) > (largest.memory_mb, largest.cpus):
                largest = guest
        return largest

    def release_commands(self):
        """(command, label) pairs to run before any machine is touched"""
        if self.config.skip_release_command:
            return []
        return [(c, label) for c, label in ((self.config.release_command, "release_command"),
                                            (self.config.seed_command, "seed_command")) if c]

    async def run_release_command(self, template, group_machines=(), region=""):
        """Run the release and seed commands; any failure aborts the deployment"""
        commands = self.release_commands()
        if not commands:
            return

        template = template.copy()
        guest = self._largest_guest(group_machines)
        if guest is not None:
            template.guest = guest
        if not region and group_machines:
            region = group_machines[0].region

        for command, label in commands:
            line = self.status.line() if self.status else None
            if line:
                line.running(f"running {label}: {command}")
            try:
                await self.run_once(command, template, region, self.config.release_command_timeout, label,
                                    start_timeout=self.config.wait_timeout)
            except (CommandFailedError, WaitTimeoutError, FleetAPIError) as e:
                if line:
                    line.failure(f"{label} failed: {e}")
                for log_line in getattr(e, "log_lines", []):
                    self.logger.error(f"  {log_line}")
                raise ReleaseCommandError(e) from e
            if line:
                line.success(f"{label} completed")

    async def run_test_commands(self, machine):
        """Run the test commands configured for the machine's process group"""
        commands = self.config.test_commands.get(machine.process_group, [])
        for command in commands:
            try:
                await self.run_once(command, machine.config, machine.region, self.config.wait_timeout, "test")
            except CommandFailedError as e:
                if self.config.fail_on_test_failure:
                    raise UnrecoverableError(e) from e
                self.logger.warning(f"test command for machine {machine.id} failed, continuing: {e}")
