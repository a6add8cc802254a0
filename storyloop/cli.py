#!/usr/bin/env python3
"""storyloop CLI entrypoint."""

import argparse
import logging
import sys
from pathlib import Path

from storyloop import __version__
from storyloop.commands import config as cmd_config_module
from storyloop.commands import control as cmd_control_module
from storyloop.commands import history as cmd_history_module
from storyloop.commands import init as cmd_init_module
from storyloop.commands import run as cmd_run_module
from storyloop.commands import status as cmd_status_module
from storyloop.commands import tools as cmd_tools_module
from storyloop.lib.constants import LOGS_DIR, LOOP_DIR_NAME

LOG_FILE = "storyloop.log"

# Handlers installed by setup_logging, replaced on each call
_handlers: list[logging.Handler] = []


def get_project_dir(args) -> Path:
    """Project root from --dir, or the current directory."""
    return Path(args.dir).resolve() if args.dir else Path.cwd()


def setup_logging(project_dir: Path, verbose: bool = False) -> None:
    """Console logging on stderr, plus a debug log file once the loop dir exists."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    while _handlers:
        handler = _handlers.pop()
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s", datefmt="%H:%M:%S"))
    root.addHandler(console)
    _handlers.append(console)

    loop_dir = project_dir / LOOP_DIR_NAME
    if loop_dir.is_dir():
        log_dir = loop_dir / LOGS_DIR
        log_dir.mkdir(exist_ok=True)
        file_handler = logging.FileHandler(log_dir / LOG_FILE)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        root.addHandler(file_handler)
        _handlers.append(file_handler)


def cmd_init(args):
    return cmd_init_module.cmd_init(args, get_project_dir(args))


def cmd_run(args):
    return cmd_run_module.cmd_run(args, get_project_dir(args))


def cmd_status(args):
    return cmd_status_module.cmd_status(args, get_project_dir(args))


def cmd_history(args):
    return cmd_history_module.cmd_history(args, get_project_dir(args))


def cmd_pause(args):
    return cmd_control_module.cmd_pause(args, get_project_dir(args))


def cmd_resume(args):
    return cmd_control_module.cmd_resume(args, get_project_dir(args))


def cmd_continue(args):
    return cmd_control_module.cmd_continue(args, get_project_dir(args))


def cmd_config_get(args):
    return cmd_config_module.cmd_config_get(args, get_project_dir(args))


def cmd_config_set(args):
    return cmd_config_module.cmd_config_set(args, get_project_dir(args))


def cmd_tools(args):
    return cmd_tools_module.cmd_tools(args, get_project_dir(args))


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got '{value}'") from None
    if number < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='storyloop', description='Autonomous story loop for AI coding CLIs')
    parser.add_argument('--dir', '-C', help='Project directory (default: current directory)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging and extra detail')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # storyloop init
    p_init = subparsers.add_parser('init', help='Create .storyloop/ and storyloop.yaml')
    p_init.add_argument('--tool', '-t', help='AI tool to use (default: from storyloop.yaml)')
    p_init.add_argument('--max-iterations', '-n', type=positive_int, help='Iteration limit')
    p_init.add_argument('--force', action='store_true', help='Reset loop state (history is kept)')
    p_init.set_defaults(func=cmd_init)

    # storyloop run
    p_run = subparsers.add_parser('run', help='Run iterations until done, paused, or at the limit')
    p_run.add_argument('--max-iterations', '-n', type=positive_int, help='Set the iteration limit')
    p_run.add_argument('--tool', '-t', help='Switch AI tool')
    p_run.add_argument('--no-prefect', action='store_true', help='Run without the Prefect flow wrapper')
    p_run.set_defaults(func=cmd_run)

    # storyloop status
    p_status = subparsers.add_parser('status', help='Show loop status')
    p_status.add_argument('--json', action='store_true', help='Machine-readable output')
    p_status.set_defaults(func=cmd_status)

    # storyloop history
    p_history = subparsers.add_parser('history', help='Show recorded iterations, newest first')
    p_history.add_argument('--limit', '-l', type=positive_int, default=10, help='Number of records (default: 10)')
    p_history.add_argument('--story', '-s', help='Only iterations of this story')
    p_history.add_argument('--stats', action='store_true', help='Aggregate statistics instead of records')
    p_history.add_argument('--json', action='store_true', help='Machine-readable output')
    p_history.set_defaults(func=cmd_history)

    # storyloop pause / resume / continue
    p_pause = subparsers.add_parser('pause', help='Pause after the current iteration')
    p_pause.set_defaults(func=cmd_pause)

    p_resume = subparsers.add_parser('resume', help='Clear the paused flag')
    p_resume.set_defaults(func=cmd_resume)

    p_continue = subparsers.add_parser('continue', help='Give a stuck tool more time')
    p_continue.set_defaults(func=cmd_continue)

    # storyloop config
    p_config = subparsers.add_parser('config', help='Read or change loop state')
    p_config.set_defaults(func=cmd_config_get, key=None)
    config_sub = p_config.add_subparsers(dest='config_cmd')

    p_config_get = config_sub.add_parser('get', help='Show loop state or one key')
    p_config_get.add_argument('key', nargs='?', help='Key to show')
    p_config_get.set_defaults(func=cmd_config_get)

    p_config_set = config_sub.add_parser('set', help='Set enabled, max_iterations, or ai_tool')
    p_config_set.add_argument('key', help='Key to set')
    p_config_set.add_argument('value', help='New value')
    p_config_set.set_defaults(func=cmd_config_set)

    # storyloop tools
    p_tools = subparsers.add_parser('tools', help='List configured AI tools and availability')
    p_tools.set_defaults(func=cmd_tools)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(get_project_dir(args), args.verbose)
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
