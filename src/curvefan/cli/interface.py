"""
Command Line Interface Module

This module provides the command-line interface: it builds the validated
configuration from the YAML file and flags, probes the BMC and runs the
control loop until it finishes, fails or is interrupted.
"""

import argparse
import logging
import signal
import sys
from typing import List, Optional

from .. import __version__
from ..config import ConfigInvalidError, apply_overrides, load_config
from ..control import ControlLoop
from ..ipmi import FanCommander, IPMIError
from ..sensors import PackageTemperatureSource, SensorError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


class CLI:
    """Command-line interface handler"""

    def __init__(self):
        """Initialize CLI handler"""
        self.parser = self._create_parser()
        self.loop: Optional[ControlLoop] = None

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create command-line argument parser

        Boolean flags default to None so that only flags actually given
        override the configuration file.

        Returns:
            Configured argument parser
        """
        parser = argparse.ArgumentParser(
            prog="curvefan",
            description="Curvefan - CPU temperature driven fan control through IPMI"
        )

        parser.add_argument(
            "-c", "--config",
            help="Path to configuration file (default: /etc/curvefan/config.yaml if present)"
        )
        parser.add_argument(
            "--min-fan",
            type=int,
            help="Minimum fan speed percentage (default: 4)"
        )
        parser.add_argument(
            "--max-fan",
            type=int,
            help="Maximum fan speed percentage (default: 100)"
        )
        parser.add_argument(
            "--min-temp",
            type=float,
            help="Temperature at which fans run at minimum speed (default: 40.0)"
        )
        parser.add_argument(
            "--max-temp",
            type=float,
            help="Temperature at which fans run at maximum speed (default: 90.0)"
        )
        parser.add_argument(
            "--temp-pow", "--exponent",
            dest="exponent",
            type=float,
            help="Power curve exponent, decrease for a cooler server, increase for a quieter one (default: 4.0)"
        )
        parser.add_argument(
            "-i", "--interval",
            type=float,
            help="Interval in seconds between fan speed adjustments (default: 5.0)"
        )
        parser.add_argument(
            "-f", "--force",
            action="store_true",
            default=None,
            help="Force fan speed updates even when speed hasn't changed"
        )
        parser.add_argument(
            "-d", "--dry-run",
            action="store_true",
            default=None,
            help="Show what would be done without actually setting fan speeds"
        )
        parser.add_argument(
            "-s", "--single",
            dest="single_shot",
            action="store_true",
            default=None,
            help="Run once and exit instead of continuous monitoring"
        )
        parser.add_argument(
            "-v", "--verbose",
            action="store_true",
            default=None,
            help="Print temperature for each package and the resulting temperature"
        )
        parser.add_argument(
            "--restore-on-exit",
            action="store_true",
            default=None,
            help="Return fan control to the BMC when stopped by a signal"
        )
        parser.add_argument(
            "--debug",
            action="store_true",
            help="Enable debug logging"
        )
        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {__version__}"
        )

        return parser

    def _handle_signal(self, signum, frame) -> None:
        logger.info(f"Received signal {signum}, stopping")
        if self.loop:
            self.loop.stop()

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Run the CLI interface

        Args:
            argv: Command-line arguments (defaults to sys.argv[1:])

        Returns:
            Process exit code
        """
        args = self.parser.parse_args(argv)

        if args.debug:
            logging.getLogger("curvefan").setLevel(logging.DEBUG)

        try:
            config = apply_overrides(
                load_config(args.config),
                min_fan=args.min_fan,
                max_fan=args.max_fan,
                min_temp=args.min_temp,
                max_temp=args.max_temp,
                exponent=args.exponent,
                interval=args.interval,
                force=args.force,
                dry_run=args.dry_run,
                single_shot=args.single_shot,
                verbose=args.verbose,
                restore_on_exit=args.restore_on_exit,
            )
        except ConfigInvalidError as e:
            logger.error(f"Invalid configuration: {e}")
            return EXIT_FAILURE

        self.loop = ControlLoop(
            config.curve,
            config.loop,
            source=PackageTemperatureSource(config.sensors),
            commander=FanCommander(config.ipmi),
        )

        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

        try:
            self.loop.startup()
        except IPMIError as e:
            if self.loop.stopped:
                logger.info(f"Stopped during IPMI validation: {e}")
                return EXIT_OK
            logger.error(f"IPMI validation failed: {e}")
            logger.error("Make sure /dev/ipmi0 exists and you have proper permissions")
            return EXIT_FAILURE

        try:
            self.loop.run()
        except SensorError as e:
            logger.error(f"Temperature read failed: {e}")
            return EXIT_FAILURE
        except IPMIError as e:
            logger.error(f"Error setting fan speed: {e}")
            return EXIT_FAILURE

        return EXIT_OK


def main() -> None:
    """Main entry point"""
    cli = CLI()
    sys.exit(cli.run())


if __name__ == "__main__":
    main()
