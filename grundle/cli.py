"""
Command line entry point.

Usage:
    grundle                       # interactive browser
    grundle list [--json]         # known packages and installed versions
    grundle install NAME...       # install latest release (NAME or owner/repo)
    grundle upgrade [NAME...]     # upgrade given or all installed packages
    grundle remove NAME...        # remove link and artifacts
    grundle rollback NAME         # relink the previously installed version

Exit codes: 0 success (including "no installable artifact"),
1 an operation failed, 2 configuration error.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Sequence

from . import __version__
from .config import ConfigError, load_config
from .installer import InstallManager, InstallResult
from .logging_config import setup_logging
from .ui import PackageBrowser, Style

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="grundle",
        description="Install and update AppImage releases from GitHub.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", help="configuration file")
    parser.add_argument("--root", help="install root (default ~/.grundle)")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug output")
    parser.add_argument("-q", "--quiet", action="store_true", help="warnings and errors only")
    parser.add_argument("--log-file", help="also log to this file")

    sub = parser.add_subparsers(dest="command")

    list_cmd = sub.add_parser("list", help="list known packages")
    list_cmd.add_argument("--json", action="store_true", help="machine-readable output")

    install_cmd = sub.add_parser("install", help="install packages")
    install_cmd.add_argument("names", nargs="+", metavar="NAME")
    install_cmd.add_argument("-f", "--force", action="store_true", help="download again")

    upgrade_cmd = sub.add_parser("upgrade", help="upgrade installed packages")
    upgrade_cmd.add_argument("names", nargs="*", metavar="NAME")
    upgrade_cmd.add_argument("-f", "--force", action="store_true", help="reinstall or downgrade")

    remove_cmd = sub.add_parser("remove", help="remove packages")
    remove_cmd.add_argument("names", nargs="+", metavar="NAME")

    rollback_cmd = sub.add_parser("rollback", help="relink the previous version")
    rollback_cmd.add_argument("name", metavar="NAME")

    sub.add_parser("ui", help="interactive browser (default)")
    return parser


def _report(results: Sequence[InstallResult], logger) -> int:
    for result in results:
        if result.ok:
            logger.info(result.message())
        else:
            logger.error(result.message())
    return EXIT_OK if all(r.ok for r in results) else EXIT_FAILED


def cmd_list(manager: InstallManager, as_json: bool) -> int:
    packages = manager.registry.list_known_packages()
    if as_json:
        print(json.dumps([p.to_dict() for p in packages], indent=2))
        return EXIT_OK
    width = max([len(p.name) for p in packages] + [1])
    for package in packages:
        version = package.installed_version or "-"
        print(f"{package.name:<{width}}  {version:<12}  {package.description}")
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logger = setup_logging(verbose=args.verbose, quiet=args.quiet, log_file=args.log_file)

    if args.root:
        os.environ["GRUNDLE_ROOT"] = os.path.abspath(os.path.expanduser(args.root))

    try:
        config = load_config(args.config, verbose=args.verbose)
        root = config.root_dir
    except ConfigError as e:
        logger.error(e.message)
        if e.remediation:
            logger.error(f"Hint: {e.remediation}")
        return EXIT_CONFIG
    logger.debug(f"Install root: {root}")

    manager = InstallManager(config, verbose=args.verbose)
    command = args.command or "ui"

    if command == "list":
        return cmd_list(manager, args.json)
    if command == "install":
        return _report([manager.install(n, force=args.force) for n in args.names], logger)
    if command == "upgrade":
        if args.names:
            results = [manager.upgrade(n, force=args.force) for n in args.names]
        else:
            results = manager.upgrade_all()
            if not results:
                logger.info("Nothing installed")
        return _report(results, logger)
    if command == "remove":
        return _report([manager.remove(n) for n in args.names], logger)
    if command == "rollback":
        return _report([manager.rollback(args.name)], logger)

    return PackageBrowser(manager, style=Style.from_env(sys.stdout)).run()
