"""
Command Line Interface Module

This module provides the command-line interface for listing, creating,
activating and deleting stored roast profiles.
"""

import argparse
import logging
import sys
from dataclasses import asdict
from typing import Any, Dict, List, Optional
import yaml

from ..catalog import ProfileCatalog, ProfileOperationResult
from ..config import DEFAULT_CONFIG_PATH, ConfigError, load_config, write_default_config
from ..profile import sample_curve
from ..storage import StorageError, YamlFileStore

logger = logging.getLogger(__name__)


class CLI:
    """Command-line interface handler"""

    def __init__(self):
        """Initialize CLI handler"""
        self.parser = self._create_parser()
        self.config: Dict[str, Any] = {}
        self.catalog: Optional[ProfileCatalog] = None

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create command-line argument parser

        Returns:
            Configured argument parser
        """
        parser = argparse.ArgumentParser(
            description="roastprofile - Manage coffee roaster profiles"
        )

        parser.add_argument(
            "-c", "--config",
            help="Path to configuration file",
            default=DEFAULT_CONFIG_PATH
        )

        parser.add_argument(
            "--debug",
            action="store_true",
            help="Enable debug logging"
        )

        commands = parser.add_subparsers(dest="command", required=True)

        commands.add_parser("list", help="List stored profiles")

        show = commands.add_parser("show", help="Show a profile's setpoints")
        show.add_argument("id")

        create = commands.add_parser("create", help="Create a profile from a YAML file")
        create.add_argument("name")
        create.add_argument("file", help="YAML file with a 'setpoints' list (times in seconds)")
        create.add_argument("--activate", action="store_true", help="Make the new profile active")

        activate = commands.add_parser("activate", help="Make a profile active")
        activate.add_argument("id")

        delete = commands.add_parser("delete", help="Delete an inactive profile")
        delete.add_argument("id")

        rename = commands.add_parser("rename", help="Rename a profile")
        rename.add_argument("id")
        rename.add_argument("name")

        commands.add_parser("ensure-default", help="Repair the catalog and create the default profile if empty")

        plot = commands.add_parser("plot", help="Print a profile's waveform samples")
        plot.add_argument("id")
        plot.add_argument("--width", type=int, default=480)
        plot.add_argument("--height", type=int, default=170)

        return parser

    def _open_catalog(self, config_path: str) -> ProfileCatalog:
        """Load configuration and open the catalog it points at"""
        write_default_config(config_path)
        self.config = load_config(config_path)
        storage = self.config["storage"]
        store = YamlFileStore(storage["path"], capacity=storage.get("capacity"))
        return ProfileCatalog.from_config(store, self.config)

    def _report(self, result: ProfileOperationResult, message: str) -> int:
        if not result:
            print(f"Error: {result.error.value}")
            return 1
        print(message)
        return 0

    def _load_setpoints(self, path: str) -> List[Dict[str, Any]]:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if isinstance(data, dict):
            return data.get("setpoints")
        return data

    def dispatch(self, args: argparse.Namespace) -> int:
        """Run one subcommand

        Returns:
            Process exit code
        """
        catalog = self.catalog

        if args.command == "list":
            profiles = catalog.list()
            if not profiles:
                print("No profiles stored")
            for profile in profiles:
                marker = "*" if profile.active else " "
                print(f"{marker} {profile.id}  {profile.name}")
            return 0

        if args.command == "show":
            detail = catalog.get(args.id)
            if detail is None:
                print("Error: not_found")
                return 1
            print(yaml.safe_dump(asdict(detail), sort_keys=False), end="")
            return 0

        if args.command == "create":
            result = catalog.create(args.name, self._load_setpoints(args.file), activate=args.activate)
            return self._report(result, f"Created profile {result.id}")

        if args.command == "activate":
            result = catalog.activate(args.id)
            return self._report(result, f"Profile {args.id} activated")

        if args.command == "delete":
            result = catalog.delete(args.id)
            return self._report(result, f"Deleted profile {args.id}")

        if args.command == "rename":
            result = catalog.rename(args.id, args.name)
            return self._report(result, f"Renamed profile {args.id}")

        if args.command == "ensure-default":
            result = catalog.ensure_default()
            return self._report(result, f"Active profile: {result.id}")

        if args.command == "plot":
            result = catalog.load(args.id)
            if not result:
                print(f"Error: {result.error.value}")
                return 1
            samples = sample_curve(result.curve, width=args.width, height=args.height)
            print(",".join(str(s) for s in samples))
            return 0

        self.parser.error(f"Unknown command {args.command}")
        return 2

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Run the CLI interface"""
        args = self.parser.parse_args(argv)

        if args.debug:
            logging.getLogger("roastprofile").setLevel(logging.DEBUG)

        try:
            self.catalog = self._open_catalog(args.config)
            level = self.config["logging"].get("level", "INFO")
            if not args.debug:
                logging.getLogger("roastprofile").setLevel(level)
            return self.dispatch(args)

        except (ConfigError, StorageError, OSError, yaml.YAMLError) as e:
            logger.error(f"Error: {e}")
            return 1


def main() -> None:
    """Main entry point"""
    cli = CLI()
    sys.exit(cli.run())


if __name__ == "__main__":
    main()
