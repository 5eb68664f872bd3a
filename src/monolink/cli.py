"""Command line entry point for monolink.

Subcommands:
  install  Install from the committed lockfile, failing if it is stale.
  update   Install and regenerate the lockfile when needed.
  link     Rebuild each project's node_modules from the last install.
  check    Report dependencies requested with inconsistent versions.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional

from monolink import __version__
from monolink.common.logging_utils import configure_logging, extra_context, is_debug_enabled
from monolink.config import RepoConfiguration, load_common_versions, load_repo_configuration
from monolink.constants import Constants, ExitCodes
from monolink.errors import (
    AlreadyReportedError,
    ConfigurationError,
    CorruptLockfile,
    ExternalToolFailure,
    LockContention,
    MalformedSpecifier,
    MonolinkError,
    NetworkProbeFailure,
    StaleLockfile,
)
from monolink.install.orchestrator import InstallOptions, InstallOrchestrator
from monolink.version_reconciler import VersionMismatchReport, find_mismatches

logger = logging.getLogger(__name__)

_TOOL_ERRORS = (ExternalToolFailure, NetworkProbeFailure, LockContention)
_FILE_ERRORS = (ConfigurationError, MalformedSpecifier, CorruptLockfile, StaleLockfile)


def _add_install_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--purge",
                        dest="PURGE",
                        help="Delete all installed packages before installing",
                        action="store_true")
    parser.add_argument("--no-link",
                        dest="NO_LINK",
                        help="Install without creating the project symlinks",
                        action="store_true")
    parser.add_argument("--recheck",
                        dest="RECHECK",
                        help="Reinstall even if the lockfile appears to be up to date",
                        action="store_true")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parses the arguments passed to the program."""
    parser = argparse.ArgumentParser(
        prog="monolink",
        description="monolink - dependency installation and linking for JavaScript monorepos",
        add_help=True,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config",
                        dest="CONFIG",
                        help="Path to the repository configuration file",
                        action="store",
                        type=str,
                        default=Constants.CONFIG_FILE)
    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store",
                        type=str.upper,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--logfile",
                        dest="LOG_FILE",
                        help="Log output file",
                        action="store",
                        type=str)

    subparsers = parser.add_subparsers(dest="COMMAND", required=True)

    install = subparsers.add_parser("install", help="Install from the committed lockfile")
    _add_install_flags(install)
    install.add_argument("--max-install-attempts",
                         dest="MAX_INSTALL_ATTEMPTS",
                         help="Maximum number of package manager runs before giving up",
                         action="store",
                         type=int)

    update = subparsers.add_parser("update", help="Install and update the lockfile as needed")
    _add_install_flags(update)
    update.add_argument("--full",
                        dest="FULL",
                        help="Ignore the committed lockfile and resolve every dependency again",
                        action="store_true")

    link = subparsers.add_parser("link", help="Create the project node_modules symlinks")
    link.add_argument("--force",
                      dest="FORCE",
                      help="Relink even if the previous link is still current",
                      action="store_true")

    check = subparsers.add_parser("check", help="Report inconsistent dependency versions")
    check.add_argument("--json",
                       dest="JSON",
                       help="Print the report as JSON",
                       action="store_true")

    return parser.parse_args(argv)


def _setup_logging(args: argparse.Namespace) -> None:
    # The CLI flag wins over whatever the environment says.
    if getattr(args, "LOG_LEVEL", None):
        os.environ[Constants.ENV_LOG_LEVEL] = args.LOG_LEVEL
    configure_logging()
    if getattr(args, "LOG_FILE", None):
        handler = logging.FileHandler(args.LOG_FILE, encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        logging.getLogger().addHandler(handler)


def run_install(args: argparse.Namespace, config: RepoConfiguration, allow_updates: bool) -> int:
    options = InstallOptions(
        allow_shrinkwrap_updates=allow_updates,
        full_upgrade=getattr(args, "FULL", False),
        purge=args.PURGE,
        no_link=args.NO_LINK,
        recheck=args.RECHECK,
        max_install_attempts=getattr(args, "MAX_INSTALL_ATTEMPTS", None),
    )
    common_versions = load_common_versions(config.common_versions_path)
    orchestrator = InstallOrchestrator(config, config.load_projects(), common_versions, options)
    state = orchestrator.do_install()
    logger.info("Done (%s).", state.value)
    return ExitCodes.SUCCESS.value


def run_link(args: argparse.Namespace, config: RepoConfiguration) -> int:
    temp_node_modules = os.path.join(config.temp_folder, Constants.NODE_MODULES)
    if not os.path.isdir(temp_node_modules):
        raise ConfigurationError(f'Nothing has been installed yet; run "{Constants.TOOL_PACKAGE_NAME} install" first.')
    common_versions = load_common_versions(config.common_versions_path)
    options = InstallOptions(force_link=args.FORCE)
    orchestrator = InstallOrchestrator(config, config.load_projects(), common_versions, options)
    if orchestrator.link():
        logger.info("Linking finished successfully.")
    else:
        logger.info("Projects are already linked; use --force to relink.")
    return ExitCodes.SUCCESS.value


def run_check(args: argparse.Namespace, config: RepoConfiguration) -> int:
    common_versions = load_common_versions(config.common_versions_path)
    report = VersionMismatchReport(find_mismatches(config.load_projects(), common_versions))
    if args.JSON:
        print(report.render_json())
    elif report.number_of_mismatches:
        print(report.render_text())
        print(f"Found {report.number_of_mismatches} mis-matching dependencies!")
    else:
        print("Found no mis-matching dependencies!")
    if report.number_of_mismatches:
        return ExitCodes.EXIT_MISMATCHES.value
    return ExitCodes.SUCCESS.value


def run(args: argparse.Namespace) -> int:
    """Dispatch a parsed command line and return the exit code."""
    config = load_repo_configuration(args.CONFIG)
    if args.COMMAND == "install":
        return run_install(args, config, allow_updates=False)
    if args.COMMAND == "update":
        return run_install(args, config, allow_updates=True)
    if args.COMMAND == "link":
        return run_link(args, config)
    return run_check(args, config)


def main(argv: Optional[List[str]] = None) -> None:
    """Main function of the program."""
    args = parse_args(argv)
    _setup_logging(args)
    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(event="function_entry", component="cli", action=args.COMMAND),
        )

    try:
        code = run(args)
    except AlreadyReportedError:
        code = ExitCodes.FILE_ERROR.value
    except _TOOL_ERRORS as exc:
        logger.error("%s", exc)
        code = ExitCodes.TOOL_ERROR.value
    except _FILE_ERRORS as exc:
        logger.error("%s", exc)
        code = ExitCodes.FILE_ERROR.value
    except MonolinkError as exc:
        logger.error("%s", exc)
        code = ExitCodes.FILE_ERROR.value

    if is_debug_enabled(logger):
        logger.debug(
            "CLI finished",
            extra=extra_context(event="function_exit", component="cli", action=args.COMMAND, outcome=str(code)),
        )
    sys.exit(code)


if __name__ == "__main__":
    main()
