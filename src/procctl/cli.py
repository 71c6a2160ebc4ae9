"""Command-line entry point.

Runs one command, relays its output to this process's stdout/stderr and
exits with the command's exit code. Mostly useful for trying out pause and
abort behaviour by hand.
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading

from .config import get_config
from .controller import ProcessController
from .errors import InvalidOperationError, OutputReadError, ProcessStartError
from .escaping import join_command
from .types import State

__all__ = ["main", "build_parser", "setup_logging"]

logger = logging.getLogger(__name__)

# Exit code used when --timeout aborts the command
TIMEOUT_EXIT_CODE = 124
# Exit code used when the shell itself could not be launched
START_FAILED_EXIT_CODE = 127


def setup_logging(verbose: bool = False) -> None:
    """Configure logging the same way for every entry point."""
    config = get_config()
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：输出到临时文件
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # 默认模式：输出到 stderr
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.DEBUG if verbose else logging.INFO

    # 第三方库只输出 WARNING 以上
    logging.basicConfig(level=logging.WARNING, handlers=log_handlers)
    logging.getLogger("procctl").setLevel(log_level)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="procctl",
        description="Run a command through the shell and relay its output.",
    )
    parser.add_argument("--cwd", default=None, help="Working directory")
    parser.add_argument(
        "--env",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Environment override (repeatable)",
    )
    parser.add_argument(
        "--raw",
        action="store_true",
        help="Pass the arguments to the shell unquoted, joined by spaces",
    )
    parser.add_argument("--timeout", type=float, default=None, help="Abort after SECONDS")
    parser.add_argument(
        "--pause-after",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Pause the process tree this long after starting",
    )
    parser.add_argument(
        "--pause-for",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Length of the --pause-after pause (default: indefinite)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Command and arguments")
    return parser


def _parse_env(pairs: list[str]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise ValueError(f"Invalid --env value: {pair!r}")
        env[name] = value
    return env


def _relay(stream):
    def write(text: str) -> None:
        stream.write(text)
        stream.flush()

    return write


def run_command(args: argparse.Namespace) -> int:
    """Run the command described by parsed arguments and return an exit code."""
    command_args = list(args.command)
    if command_args and command_args[0] == "--":
        command_args = command_args[1:]
    if not command_args:
        raise ValueError("No command given")

    command = " ".join(command_args) if args.raw else join_command(command_args)
    controller = ProcessController(
        command,
        working_directory=args.cwd,
        environment=_parse_env(args.env),
    )
    controller.stdout_text += _relay(sys.stdout)
    controller.stderr_text += _relay(sys.stderr)
    controller.command_resumed += lambda: logger.info("Command resumed")

    pause_timer: threading.Timer | None = None
    controller.start()
    logger.info(f"Started pid={controller.pid}: {command}")

    if args.pause_after is not None:
        def pause() -> None:
            if controller.state.is_terminal:
                return
            logger.info(f"Pausing for {args.pause_for or 'ever'}")
            try:
                controller.pause(args.pause_for)
            except InvalidOperationError:
                # Aborted by the timeout in the meantime
                pass

        pause_timer = threading.Timer(args.pause_after, pause)
        pause_timer.daemon = True
        pause_timer.start()

    try:
        if not controller.wait(args.timeout):
            logger.warning(f"Timeout after {args.timeout}s, aborting")
            controller.abort()
            controller.wait()
            return TIMEOUT_EXIT_CODE
    except KeyboardInterrupt:
        logger.warning("Interrupted, aborting")
        controller.abort()
        controller.wait()
        return 130
    finally:
        if pause_timer is not None:
            pause_timer.cancel()

    if controller.state == State.ABORTED:
        return 1
    return controller.exit_code


def main(argv: list[str] | None = None) -> None:
    """主入口点。"""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    try:
        exit_code = run_command(args)
    except ValueError as e:
        parser.error(str(e))
    except ProcessStartError as e:
        logger.error(str(e))
        exit_code = START_FAILED_EXIT_CODE
    except OutputReadError as e:
        logger.error(f"Output is incomplete: {e}")
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
