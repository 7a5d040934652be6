import argparse
import logging
import sys

from rich.markup import escape

from llamadeploy.branding import VERSION, console, ui_print
from llamadeploy.config import Settings, load_settings, resolve_config_path
from llamadeploy.deploy import Deployment
from llamadeploy.errors import ConfigError
from llamadeploy.log import setup_logging
from llamadeploy.manage import COMMAND_ALIASES, USAGE, ServerManager
from llamadeploy.preflight_checker import PreflightChecker, export_report, print_report
from llamadeploy.prompts import InteractivePrompter, NonInteractivePrompter, Prompter
from llamadeploy.utils.commands import CommandRunner

logger = logging.getLogger(__name__)


def _common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        metavar="FILE",
        help="Settings file (default: $LLAMA_DEPLOY_CONFIG or ./config.env)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug output")


def _print_error(message: str) -> None:
    console.print(f"[red]❌ Error:[/red] {escape(message)}", highlight=False)


def make_prompter(settings: Settings, non_interactive: bool) -> Prompter:
    if non_interactive or not sys.stdin.isatty():
        return NonInteractivePrompter(settings.prompt_answers())
    return InteractivePrompter()


def deploy_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="llama-deploy",
        description="Deploy llama.cpp server with GPU acceleration, nginx and optional tunnel",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  llama-deploy
  llama-deploy --config /srv/llama/config.env
  llama-deploy --yes --non-interactive

Environment Variables:
  LLAMA_DEPLOY_CONFIG        Settings file used when --config is not given
  LLAMA_PASSWORD_<USER>      Password for USER in non-interactive runs
        """,
    )
    _common_arguments(parser)
    parser.add_argument("-y", "--yes", action="store_true", help="Do not ask before deploying")
    parser.add_argument(
        "--non-interactive",
        action="store_true",
        help="Answer every prompt from the settings file",
    )
    parser.add_argument("--dry-run", action="store_true", help="Log commands without running them")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
        setup_logging(settings.deployment_log, verbose=args.verbose)
        logger.info("Configuration loaded from %s", settings.source)
        deployment = Deployment(
            settings,
            CommandRunner(dry_run=args.dry_run),
            make_prompter(settings, args.non_interactive),
            assume_yes=args.yes or settings.assume_yes,
        )
        return deployment.run()
    except ConfigError as e:
        _print_error(str(e))
        return 1
    except KeyboardInterrupt:
        console.print("\n[red]❌ Operation cancelled by user[/red]")
        return 130


def preflight_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="llama-preflight",
        description="Check whether this machine is ready for a llama.cpp server deployment",
    )
    _common_arguments(parser)
    parser.add_argument("--json", metavar="PATH", help="Also write the report as JSON")
    args = parser.parse_args(argv)

    setup_logging(verbose=args.verbose)
    try:
        config_found = resolve_config_path(args.config).exists()
        settings = load_settings(args.config, required=False, validate=False)
        checker = PreflightChecker(settings, CommandRunner(), config_found=config_found)
        report = checker.run_all()
    except ConfigError as e:
        _print_error(str(e))
        return 1
    except KeyboardInterrupt:
        console.print("\n[red]❌ Operation cancelled by user[/red]")
        return 130

    print_report(report)
    if args.json:
        export_report(report, args.json)
        ui_print(f"Report written to {escape(args.json)}")
    return report.exit_code


def manage_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="llama-manage", add_help=False)
    _common_arguments(parser)
    parser.add_argument("--user", help="Username for the authenticated completion test")
    parser.add_argument("--non-interactive", action="store_true")
    parser.add_argument("command", nargs="?")
    parser.add_argument("args", nargs=argparse.REMAINDER)
    args, extra = parser.parse_known_args(argv)

    command = args.command or (extra[0] if extra else "help")
    command_args = list(args.args) if args.command else extra[1:]

    name = COMMAND_ALIASES.get(command)
    if name == "help":
        console.print(USAGE, markup=False, highlight=False)
        return 0
    if name is None:
        console.print(f"Unknown command: {escape(command)}", highlight=False)
        console.print(USAGE, markup=False, highlight=False)
        return 1

    setup_logging(verbose=args.verbose)
    try:
        settings = load_settings(args.config, validate=False)
        manager = ServerManager(
            settings,
            CommandRunner(),
            prompter=make_prompter(settings, args.non_interactive),
            test_user=args.user,
        )
        return manager.run(command, command_args)
    except ConfigError as e:
        _print_error(str(e))
        return 1
    except KeyboardInterrupt:
        console.print("\n[red]❌ Operation cancelled by user[/red]")
        return 130


if __name__ == "__main__":
    sys.exit(manage_main())
