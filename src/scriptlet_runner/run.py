# run.py
# Entry point: the `scriptlet` command line. Wiring plus the small amount of
# glue that maps command-line tokens onto a script's declared arguments.
#
# Examples:
#   scriptlet locations add ~/bin
#   scriptlet run deploy.sh -v --output log.txt prod
#   scriptlet chain create release "build.sh --release" "deploy.sh prod"
#   scriptlet chain run release --find error

import argparse
import asyncio
import logging
import os
import shlex
import signal
import sys

from pydantic import ValidationError
from rich.logging import RichHandler

from scriptlet_runner import display
from scriptlet_runner.chain import ChainRunner
from scriptlet_runner.config import Settings, get_settings
from scriptlet_runner.events import ChainOutcome
from scriptlet_runner.models import (
    ScanLocation,
    Script,
    ScriptArgument,
    ScriptChain,
    ScriptChainStep,
)
from scriptlet_runner.parser import ScriptParser
from scriptlet_runner.runner import ScriptRunner, build_invocation
from scriptlet_runner.scanner import ScriptScanner
from scriptlet_runner.store import AppearanceMode, RunHistory, Store

logger = logging.getLogger("scriptlet_runner")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ScriptNotFoundError(Exception):
    """Raised when a script reference matches nothing in the catalog or on disk."""


class ChainNotFoundError(Exception):
    """Raised when no saved chain has the requested name."""


class ScriptArgumentError(Exception):
    """Raised when command-line tokens do not fit a script's declared arguments."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=display.console, show_path=False)],
    )


def load_catalog(store: Store) -> list[Script]:
    return ScriptScanner().scan(store.scan_locations())


def find_script(catalog: list[Script], ref: str) -> Script:
    """Match by absolute path, then by name; fall back to parsing a file on disk."""
    path = os.path.abspath(os.path.expanduser(ref))
    for script in catalog:
        if script.path == path:
            return script
    for script in catalog:
        if ref in (script.name, script.display_name):
            return script
    if os.path.isfile(path):
        return ScriptParser().parse(path)
    raise ScriptNotFoundError(f"No script matches {ref!r}.")


def find_chain(chains: list[ScriptChain], name: str) -> ScriptChain:
    for chain in chains:
        if chain.name == name:
            return chain
    raise ChainNotFoundError(f"No chain named {name!r}.")


def select_arguments(script: Script, tokens: list[str]) -> list[ScriptArgument]:
    """
    Configure copies of `script.arguments` from command-line style tokens.

    `-v`, `--output=FILE`, `--output FILE` enable options; bare tokens fill
    positional arguments in declared order.
    """
    arguments = [arg.model_copy(update={"is_enabled": False, "value": ""}) for arg in script.arguments]
    by_flag: dict[str, ScriptArgument] = {}
    for arg in arguments:
        for flag in (arg.short_flag, arg.long_flag):
            if flag:
                by_flag[flag] = arg
    positionals = iter([arg for arg in arguments if arg.is_positional])

    index = 0
    while index < len(tokens):
        token = tokens[index]
        index += 1

        if token.startswith("-") and token != "-":
            flag, has_value, value = token.partition("=")
            arg = by_flag.get(flag)
            if arg is None:
                raise ScriptArgumentError(f"{script.name} declares no option {flag}.")
            if has_value and not arg.requires_value:
                raise ScriptArgumentError(f"{flag} does not take a value.")
            if arg.requires_value and not has_value:
                if index >= len(tokens):
                    raise ScriptArgumentError(f"{flag} requires a value.")
                value = tokens[index]
                index += 1
        else:
            arg = next(positionals, None)
            if arg is None:
                raise ScriptArgumentError(f"Unexpected argument {token!r} for {script.name}.")
            value = token

        if arg.choices is not None and value not in arg.choices:
            raise ScriptArgumentError(
                f"{arg.display_name} must be one of: {', '.join(arg.choices)}."
            )
        arg.is_enabled = True
        arg.select(value if arg.requires_value else "")

    return arguments


def build_step(catalog: list[Script], definition: str, continue_on_error: bool) -> ScriptChainStep:
    """`definition` is a script reference followed by its arguments, shell-quoted."""
    tokens = shlex.split(definition)
    if not tokens:
        raise ScriptArgumentError("Empty step.")
    script = find_script(catalog, tokens[0])
    arguments = select_arguments(script, tokens[1:])
    return ScriptChainStep.from_arguments(script, arguments, continue_on_error=continue_on_error)


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


async def run_script(
    settings: Settings,
    store: Store,
    script: Script,
    arguments: list[ScriptArgument],
    find: str | None = None,
) -> int:
    runner = ScriptRunner(settings)
    runner.stream.subscribe(display.LiveOutput().write)

    if store.preferences().clear_console_on_run and display.console.is_terminal:
        display.console.clear()
    display.run_start(
        script, build_invocation(script, arguments, settings.shell, settings.invocation)
    )

    history = RunHistory(store)
    history.add_entry(script, arguments)

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, runner.cancel)
    try:
        outcome = await runner.start(script, arguments)
    finally:
        loop.remove_signal_handler(signal.SIGINT)

    history.update_last_exit_code(outcome.exit_code)
    display.run_finished(outcome)
    if find:
        display.search_results(outcome.output, find)

    if outcome.launch_failed or outcome.exit_code < 0:
        # Launch failures and deaths by signal both report as a plain failure.
        return 1
    return outcome.exit_code


async def run_chain(
    settings: Settings,
    store: Store,
    chain: ScriptChain,
    catalog: list[Script],
    find: str | None = None,
) -> int:
    chain_runner = ChainRunner(settings)
    chain_runner.stream.subscribe(display.LiveOutput().write)
    display.chain_start(chain)

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, chain_runner.stop)
    try:
        outcome = await chain_runner.run(chain, catalog)
    finally:
        loop.remove_signal_handler(signal.SIGINT)

    store.mark_chain_run(chain.id)
    display.chain_finished(chain, chain_runner.step_statuses, outcome, chain_runner.overall_success)
    if find:
        display.search_results(chain_runner.output, find)

    if outcome is not ChainOutcome.COMPLETED:
        return 1
    return 0 if chain_runner.overall_success else 1


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_scripts(args: argparse.Namespace, settings: Settings, store: Store) -> int:
    display.banner(settings)
    display.script_list(load_catalog(store), store.icons())
    return 0


def cmd_show(args: argparse.Namespace, settings: Settings, store: Store) -> int:
    display.script_detail(find_script(load_catalog(store), args.script))
    return 0


def cmd_locations(args: argparse.Namespace, settings: Settings, store: Store) -> int:
    locations = store.scan_locations()
    if args.action == "add":
        path = os.path.abspath(os.path.expanduser(args.path))
        if any(location.path == path for location in locations):
            display.info(f"{path} is already a scan location.")
            return 0
        locations.append(ScanLocation(path=path, label=args.label or "", recursive=not args.flat))
        store.save_scan_locations(locations)
    elif args.action == "remove":
        path = os.path.abspath(os.path.expanduser(args.path))
        store.save_scan_locations([location for location in locations if location.path != path])
    elif args.action in ("enable", "disable"):
        path = os.path.abspath(os.path.expanduser(args.path))
        for location in locations:
            if location.path == path:
                location.is_enabled = args.action == "enable"
        store.save_scan_locations(locations)
    display.location_list(store.scan_locations())
    return 0


def cmd_run(args: argparse.Namespace, settings: Settings, store: Store) -> int:
    script = find_script(load_catalog(store), args.script)
    arguments = select_arguments(script, args.arguments)
    return asyncio.run(run_script(settings, store, script, arguments, args.find))


def cmd_chains(args: argparse.Namespace, settings: Settings, store: Store) -> int:
    display.chain_list(store.chains())
    return 0


def cmd_chain(args: argparse.Namespace, settings: Settings, store: Store) -> int:
    chains = store.chains()

    if args.action == "create":
        if any(chain.name == args.name for chain in chains):
            raise ScriptArgumentError(f"A chain named {args.name!r} already exists.")
        catalog = load_catalog(store)
        steps = [build_step(catalog, definition, args.continue_on_error) for definition in args.steps]
        chain = ScriptChain(name=args.name, description=args.description, steps=steps)
        store.save_chains([*chains, chain])
        display.console.print(display.chain_status_table(chain))
        return 0

    chain = find_chain(chains, args.name)
    if args.action == "show":
        display.console.print(display.chain_status_table(chain))
        return 0
    if args.action == "delete":
        store.save_chains([other for other in chains if other.id != chain.id])
        display.info(f"Deleted chain {chain.name!r}.")
        return 0
    return asyncio.run(run_chain(settings, store, chain, load_catalog(store), args.find))


def cmd_history(args: argparse.Namespace, settings: Settings, store: Store) -> int:
    history = RunHistory(store)
    if args.clear:
        history.clear()
    display.history_list(history.entries())
    return 0


def cmd_icon(args: argparse.Namespace, settings: Settings, store: Store) -> int:
    script = find_script(load_catalog(store), args.script)
    store.set_icon(script.path, args.icon)
    return 0


def cmd_prefs(args: argparse.Namespace, settings: Settings, store: Store) -> int:
    preferences = store.preferences()
    if args.clear_console is not None:
        preferences.clear_console_on_run = args.clear_console == "on"
    if args.appearance is not None:
        preferences.appearance_mode = AppearanceMode(args.appearance)
    store.save_preferences(preferences)
    display.info(
        f"clear console on run: {preferences.clear_console_on_run}, "
        f"appearance: {preferences.appearance_mode.value}"
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="scriptlet", description="Run shell scripts and chains of scripts.")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("scripts", help="List scripts found in the scan locations.").set_defaults(handler=cmd_scripts)

    show = commands.add_parser("show", help="Show a script's description and arguments.")
    show.add_argument("script")
    show.set_defaults(handler=cmd_show)

    locations = commands.add_parser("locations", help="List or edit scan locations.")
    locations.add_argument("action", nargs="?", choices=["list", "add", "remove", "enable", "disable"], default="list")
    locations.add_argument("path", nargs="?")
    locations.add_argument("--label")
    locations.add_argument("--flat", action="store_true", help="Do not descend into subdirectories.")
    locations.set_defaults(handler=cmd_locations)

    run = commands.add_parser("run", help="Run one script.", allow_abbrev=False)
    run.add_argument("--find", metavar="QUERY", help="Highlight QUERY in the transcript afterwards.")
    run.add_argument("script")
    run.add_argument("arguments", nargs=argparse.REMAINDER)
    run.set_defaults(handler=cmd_run)

    commands.add_parser("chains", help="List saved chains.").set_defaults(handler=cmd_chains)

    chain = commands.add_parser("chain", help="Create, show, run or delete a chain.")
    chain.add_argument("action", choices=["create", "show", "run", "delete"])
    chain.add_argument("name")
    chain.add_argument("steps", nargs="*", help='Steps for create, e.g. "deploy.sh -v prod".')
    chain.add_argument("--description", default="")
    chain.add_argument("--continue-on-error", action="store_true")
    chain.add_argument("--find", metavar="QUERY")
    chain.set_defaults(handler=cmd_chain)

    history = commands.add_parser("history", help="Show recent single-script runs.")
    history.add_argument("--clear", action="store_true")
    history.set_defaults(handler=cmd_history)

    icon = commands.add_parser("icon", help="Set (or, without ICON, remove) a script's icon.")
    icon.add_argument("script")
    icon.add_argument("icon", nargs="?")
    icon.set_defaults(handler=cmd_icon)

    prefs = commands.add_parser("prefs", help="Show or change preferences.")
    prefs.add_argument("--clear-console", choices=["on", "off"])
    prefs.add_argument("--appearance", choices=[mode.value for mode in AppearanceMode])
    prefs.set_defaults(handler=cmd_prefs)

    return parser


def main(argv: list[str] | None = None) -> int:
    try:
        settings = get_settings()
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        display.halt(f"Invalid configuration: {problems}")
        return 2
    configure_logging(settings.log_level)
    args = build_parser().parse_args(argv)

    if args.command == "locations" and args.action != "list" and not args.path:
        display.halt(f"locations {args.action} needs a PATH.")
        return 2

    store = Store(settings.store_path)
    logger.debug("Using store %s", store.path)
    try:
        return args.handler(args, settings, store)
    except (ScriptNotFoundError, ChainNotFoundError, ScriptArgumentError) as exc:
        display.halt(str(exc))
        return 2


if __name__ == "__main__":
    sys.exit(main())
