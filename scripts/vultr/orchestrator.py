#!/usr/bin/env python3
"""
Main orchestrator script for the Vultr instance lifecycle system.

Runs the self-destruct timers and the shared panel, or performs one-off
create, destroy and status operations from the command line.
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path

# Add the project root to the Python path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from tabulate import tabulate

from dedi_engine.vultr.core.state import Creator
from dedi_engine.vultr.orchestration.coordinator import Orchestrator, create_orchestrator
from dedi_engine.vultr.utils.config import (
    OrchestratorSettings,
    load_config,
    settings_from_config,
    validate_config,
)
from dedi_engine.vultr.utils.exceptions import VultrError
from dedi_engine.vultr.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


async def run_forever(orchestrator: Orchestrator) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_shutdown)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass
    await orchestrator.run()


async def show_status(orchestrator: Orchestrator) -> None:
    await orchestrator.sync()
    records = orchestrator.registry.list_active()
    if not records:
        print("No active servers.")
        return

    rows = [
        [r.id, r.name, r.status.value, r.ip or "", r.region or "", r.creator.display_name]
        for r in records
    ]
    print(tabulate(rows, headers=["ID", "Name", "Status", "IP", "Region", "Creator"], tablefmt="grid"))


async def create_server(
    orchestrator: Orchestrator, name: str, snapshot: str | None, region: str | None
) -> None:
    ack = await orchestrator.provision(
        snapshot, name, region, requester=Creator("cli", "Command Line")
    )
    print(f"{ack.message} ({ack.instance_id})")
    # Wait for the status poll to finish
    await orchestrator.scheduler.drain()


async def destroy_server(orchestrator: Orchestrator, instance_id: str) -> None:
    ack = await orchestrator.request_destroy(instance_id)
    print(ack.message)
    await orchestrator.scheduler.drain()


async def capture_snapshot(
    orchestrator: Orchestrator, instance_id: str, name: str, public: bool, user: str
) -> None:
    ack = await orchestrator.create_snapshot(
        instance_id, name, Creator(user, user), public=public
    )
    print(ack.message)
    await orchestrator.scheduler.drain()


async def dispatch(args: argparse.Namespace, settings: OrchestratorSettings) -> None:
    orchestrator = create_orchestrator(settings)
    try:
        if args.status:
            await show_status(orchestrator)
        elif args.create:
            await create_server(orchestrator, args.create, args.snapshot, args.region)
        elif args.destroy:
            await destroy_server(orchestrator, args.destroy)
        elif args.capture:
            await capture_snapshot(
                orchestrator, args.capture, args.snapshot_name or args.capture, args.public, args.user
            )
        else:
            await run_forever(orchestrator)
    finally:
        await orchestrator.shutdown()
        await orchestrator.provider.close()


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Vultr Instance Lifecycle Orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run timers and panel refresh until interrupted
  python orchestrator.py --run

  # Show tracked servers
  python orchestrator.py --status

  # Create a server from the configured snapshot and wait until it is ready
  python orchestrator.py --create "Game Night"

  # Destroy a server
  python orchestrator.py --destroy <instance-id>

  # Snapshot a running server (the user must be listed in ADMIN_USER_IDS)
  python orchestrator.py --capture <instance-id> --snapshot-name "Backup" --user 123
        """,
    )

    parser.add_argument("--run", action="store_true", help="Run the orchestrator")
    parser.add_argument("--status", action="store_true", help="Show current status")
    parser.add_argument("--create", type=str, metavar="NAME", help="Create a server")
    parser.add_argument("--destroy", type=str, metavar="ID", help="Destroy a server")
    parser.add_argument("--snapshot", type=str, default=None, help="Snapshot to create from")
    parser.add_argument("--region", type=str, default=None, help="Region to create in")
    parser.add_argument("--capture", type=str, metavar="ID", help="Snapshot a running server")
    parser.add_argument("--snapshot-name", type=str, default=None, help="Name of the new snapshot")
    parser.add_argument("--public", action="store_true", help="Make the new snapshot public")
    parser.add_argument("--user", type=str, default="cli", help="Requester id for permission checks")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--config-file", type=Path, default=None, help="Configuration file path"
    )

    args = parser.parse_args()

    if not (args.run or args.status or args.create or args.destroy or args.capture):
        parser.print_help()
        return 1

    # Load configuration
    try:
        config = load_config(args.config_file)
    except VultrError as e:
        print(f"Failed to load configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(
        args.log_level or config.get("LOG_LEVEL", "INFO"),
        config.get("LOG_FILE", "dedi_engine.log"),
    )

    errors = validate_config(config)
    if errors:
        logger.error("Configuration validation failed:")
        for error in errors:
            logger.error(f"  - {error}")
        return 1

    try:
        settings = settings_from_config(config)
        asyncio.run(dispatch(args, settings))
        return 0
    except KeyboardInterrupt:
        logger.info("Orchestrator interrupted by user")
        return 0
    except VultrError as e:
        logger.error(f"❌ Orchestrator failed with error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
