import argparse
import asyncio
import json
import os
import signal
import sys
from dataclasses import asdict

from .engine import DeploymentEngine
from .errors import ConfigurationError, DeploymentError
from .fleet import HttpFleetClient, RetryingFleetClient
from .inmem import InMemoryFleetClient
from .logger import get_logger, setup_logging
from .models import DeploymentConfig, Machine, MachineConfig, Volume


def load_templates(path):
    """Process group name -> MachineConfig"""
    logger = get_logger("cli")
    try:
        with open(path) as f:
            data = json.load(f)
        return {group: MachineConfig.from_dict(config) for group, config in data.items()}
    except Exception as e:
        logger.error(f"Error loading templates: {e}")
        raise


def load_config(path=None, overrides=None):
    data = {}
    if path:
        with open(path) as f:
            data = json.load(f)
    data.update({k: v for k, v in (overrides or {}).items() if v is not None})
    return DeploymentConfig.from_dict(data)


def load_state(path):
    """Machines and volumes for a local rehearsal against the in-memory fleet"""
    logger = get_logger("cli")
    try:
        with open(path) as f:
            data = json.load(f)
        machines = [Machine.from_dict(m) for m in data.get("machines", [])]
        volumes = [Volume.from_dict(v) for v in data.get("volumes", [])]
        return machines, volumes
    except Exception as e:
        logger.error(f"Error loading fleet state: {e}")
        raise


def save_state(path, client):
    state = {
        "machines": [m.to_dict() for m in client.live_machines()],
        "volumes": [asdict(v) for v in client.volumes.values()],
    }
    with open(path, "w") as f:
        json.dump(state, f, indent=2, default=str)


def build_client(args):
    if args.state:
        machines, volumes = load_state(args.state)
        client = InMemoryFleetClient()
        for volume in volumes:
            client.add_volume(volume)
        for machine in machines:
            client.add_machine(machine)
        return client
    if not args.api_url or not args.app:
        raise ConfigurationError("--api-url and --app are required unless --state is given")
    token = args.token or os.environ.get("FLEET_API_TOKEN")
    return RetryingFleetClient(HttpFleetClient(args.api_url, args.app, token=token))


def config_overrides(args):
    overrides = {
        "strategy": args.strategy,
        "max_unavailable": args.max_unavailable,
        "wait_timeout": args.wait_timeout,
        "lease_timeout": args.lease_timeout,
        "release_command_timeout": args.release_command_timeout,
        "release_command": args.release_command,
    }
    for flag in ("skip_health_checks", "restart_only", "dry_run", "update_only"):
        if getattr(args, flag, False):
            overrides[flag] = True
    return overrides


def build_parser():
    parser = argparse.ArgumentParser(description="Machine rollout engine")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="cmd", required=True)

    for name in ("deploy", "plan"):
        cmd = sub.add_parser(name)
        cmd.add_argument("--templates", required=True, help="JSON file of process group -> machine config")
        cmd.add_argument("--config", help="JSON file of deployment options")
        cmd.add_argument("--image")
        cmd.add_argument("--api-url")
        cmd.add_argument("--app")
        cmd.add_argument("--token")
        cmd.add_argument("--state", help="Fleet state JSON file, deploys against an in-memory fleet")
        cmd.add_argument("--strategy", choices=["rolling", "canary", "bluegreen", "immediate"])
        cmd.add_argument("--max-unavailable", type=float)
        cmd.add_argument("--wait-timeout", type=float)
        cmd.add_argument("--lease-timeout", type=float)
        cmd.add_argument("--release-command-timeout", type=float)
        cmd.add_argument("--release-command")

    deploy = sub.choices["deploy"]
    deploy.add_argument("--skip-health-checks", action="store_true")
    deploy.add_argument("--restart-only", action="store_true")
    deploy.add_argument("--update-only", action="store_true")
    deploy.add_argument("--dry-run", action="store_true")
    return parser


async def run_deploy(engine):
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()

    def interrupt():
        # First Ctrl-C aborts with cleanup, a second one stops waiting for it
        if engine.abort_event.is_set():
            get_logger("cli").warning("Interrupted again, cancelling the deployment")
            task.cancel()
        else:
            engine.abort()

    try:
        loop.add_signal_handler(signal.SIGINT, interrupt)
    except (NotImplementedError, RuntimeError):
        pass  # No signal handlers on this platform or thread
    try:
        return await engine.deploy_machines_app()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


async def run(args):
    templates = load_templates(args.templates)
    config = load_config(args.config, config_overrides(args))
    client = build_client(args)
    engine = DeploymentEngine(client, templates, config, image=args.image)

    try:
        if args.cmd == "plan":
            plan = await engine.plan_machines_app()
            print(json.dumps({
                "summary": plan.summary(),
                "groups_to_remove": plan.groups_to_remove,
                "groups_needing_machines": plan.groups_needing_machines,
                "entries": [
                    {"machine": e.machine_id, "group": e.process_group, "disposition": e.disposition.value}
                    for e in plan.entries
                ],
            }, indent=2))
            return 0

        try:
            result = await run_deploy(engine)
        except DeploymentError:
            result = engine.result
        print(json.dumps(result.to_dict(), indent=2, default=str))
        if args.state and not config.dry_run:
            save_state(args.state, client)
        return 0 if result.success else 1
    finally:
        await client.close()


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        code = asyncio.run(run(args))
    except (DeploymentError, OSError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    except (asyncio.CancelledError, KeyboardInterrupt):
        print("Error: deployment cancelled")
        sys.exit(130)
    sys.exit(code)


if __name__ == "__main__":
    main()
