"""
Command-line interface for stratum.

This module handles argument parsing and hands the resolved configuration to
the install phase coordinator.
"""
import argparse
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from stratum.config.settings import DEFAULT_TARGET, InstallSettings
from stratum.utils.logging import DEFAULT_LOG_FILE, setup_logging
from stratum.utils.command import CommandRunner, SimulationMode
from stratum.utils.format import TermColors, colorize
from stratum.core.context import ProvisionContext
from stratum.core.phases import EXIT_ABORTED, EXIT_FAILURE, InstallCoordinator
from stratum.core.exceptions import StratumError

logger = logging.getLogger('stratum')


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Namespace containing parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="Layered storage provisioning for automated Linux installation. "
                    "Configuration is read from the environment (INSTALL_DISK, PARTITIONING_STRATEGY, ...) "
                    "and optionally overridden by a JSON file."
    )

    parser.add_argument(
        "-c", "--config",
        help="JSON file with configuration keys (lowercase variable names), overriding the environment"
    )

    parser.add_argument(
        "-t", "--target",
        help=f"Mount point for the target root (default: TARGET_ROOT or {DEFAULT_TARGET})"
    )

    parser.add_argument(
        "-s", "--simulate",
        action="store_true",
        help="Simulate operations without making any changes to the system"
    )

    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )

    parser.add_argument(
        "--log-file",
        default=DEFAULT_LOG_FILE,
        help=f"File mirroring the console log (default: {DEFAULT_LOG_FILE})"
    )

    simulation_group = parser.add_argument_group('Disk simulation options (only with --simulate)')
    simulation_group.add_argument(
        "--sim-disk-size",
        help="Simulated disk size (e.g., '500G', '1T') - only used in simulation mode"
    )

    simulation_group.add_argument(
        "--sim-disk-type",
        choices=["hdd", "ssd", "nvme"],
        help="Simulated disk type (hdd, ssd, nvme) - only used in simulation mode"
    )

    simulation_group.add_argument(
        "--sim-sector-size",
        type=int,
        choices=[512, 4096],
        help="Simulated logical sector size in bytes - only used in simulation mode"
    )

    simulation_group.add_argument(
        "--sim-extra-disk",
        action="append",
        default=[],
        metavar="DEVICE",
        help="Additional simulated disk, may be repeated (for RAID schemes)"
    )

    simulation_group.add_argument(
        "--sim-firmware",
        choices=["uefi", "bios"],
        help="Simulated firmware boot mode - only used in simulation mode"
    )

    return parser.parse_args(argv)


def simulation_params(args: argparse.Namespace, settings: InstallSettings) -> Dict[str, Any]:
    """Translate the --sim-* options into CommandRunner simulation parameters."""
    params: Dict[str, Any] = {"disks": [settings.install_disk, *args.sim_extra_disk]}
    if args.sim_disk_size:
        params["disk_size"] = args.sim_disk_size
        logger.info(f"Simulating disk size: {args.sim_disk_size}")
    if args.sim_disk_type:
        params["disk_type"] = args.sim_disk_type
        params["rotational"] = args.sim_disk_type == "hdd"
        logger.info(f"Simulating disk type: {args.sim_disk_type} (rotational: {params['rotational']})")
    if args.sim_sector_size:
        params["sector_size"] = args.sim_sector_size
    if args.sim_firmware:
        params["firmware"] = args.sim_firmware
        logger.info(f"Simulating {args.sim_firmware.upper()} firmware")
    return params


def display_simulation_summary(cmd_runner: CommandRunner) -> None:
    """
    Display a summary of the simulation.

    Args:
        cmd_runner: CommandRunner instance for executing commands
    """
    if cmd_runner.simulation_mode != SimulationMode.SIMULATE:
        return

    report = cmd_runner.get_simulation_report()

    try:
        terminal_width = os.get_terminal_size().columns
    except (AttributeError, OSError):
        terminal_width = 80

    stars = "*" * terminal_width

    if cmd_runner.colored_output:
        print(f"\n{colorize(stars, TermColors.SIM)}")
        print(colorize("SIMULATION COMPLETE - NO CHANGES WERE MADE", TermColors.SIM + TermColors.BOLD))
        print(f"{colorize(stars, TermColors.SIM)}\n")

        print(colorize("The following operations would have been performed:", TermColors.SUCCESS))
        print(report)

        print(f"\n{colorize('To execute these operations for real, run without the --simulate flag.', TermColors.SIM)}")
    else:
        print(f"\n{stars}")
        print("SIMULATION COMPLETE - NO CHANGES WERE MADE")
        print(f"{stars}\n")

        print("The following operations would have been performed:")
        print(report)

        print("\nTo execute these operations for real, run without the --simulate flag.")


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main function.

    Returns:
        Exit code (0 for success, 1 for failures, 130 after an interrupt)
    """
    args = None
    try:
        args = parse_arguments(argv)

        setup_logging(args.debug, args.log_file)

        cmd_runner = CommandRunner(
            SimulationMode.SIMULATE if args.simulate else SimulationMode.DISABLED,
            not args.no_color
        )

        settings = InstallSettings.load(args.config)
        if args.target:
            settings = settings.with_overrides(target_root=args.target)

        if args.simulate:
            logger.info("Running in simulation mode - NO CHANGES WILL BE MADE")
            cmd_runner.set_simulation_params(simulation_params(args, settings))

        context = ProvisionContext.create(settings, cmd_runner)
        result = InstallCoordinator(context).run()

        if result.succeeded:
            if args.simulate:
                display_simulation_summary(cmd_runner)
            elif settings.keep_mounted:
                logger.info(f"The system is mounted at {settings.target_root}")
        return result.exit_code

    except StratumError as e:
        logger.error(str(e))
        return EXIT_FAILURE

    except KeyboardInterrupt:
        logger.error("Operation cancelled by user")
        return EXIT_ABORTED

    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        if args is not None and args.debug:
            import traceback
            traceback.print_exc()
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
