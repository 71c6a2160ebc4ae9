"""Fluent helpers for one-shot "run it and check the exit code" usage.

Example:
    ```python
    from procctl import run, run_raw

    version = run("git", "--version").go_get_output_text()
    run_raw("make test").in_dir("/src/project").success_codes(0, 2).go()
    ```
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path

import anyio

from .config import Config
from .controller import ProcessController
from .errors import CommandAbortedError, CommandFailedError
from .escaping import join_command
from .types import RunAsUser, State

__all__ = [
    "FluidInvoker",
    "InvocationCounter",
    "default_counter",
    "run",
    "run_raw",
]

logger = logging.getLogger(__name__)


class InvocationCounter:
    """Thread-safe counter handing out invocation numbers.

    Numbers start at 1. Each FluidInvoker takes one when it runs; pass a
    dedicated counter to keep numbering independent of other callers.
    """

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    @property
    def value(self) -> int:
        """Number of invocations counted so far."""
        with self._lock:
            return self._value

    def reset(self) -> None:
        with self._lock:
            self._value = 0


# Shared by invokers that were not given their own counter
default_counter = InvocationCounter()


class FluidInvoker:
    """Builder over ProcessController for a single invocation.

    Both streams are always captured. By default only exit code 0 counts as
    success; ``success_codes()`` replaces that set, and ``fail_codes()`` names
    codes that are always failures (with every other code a success unless
    success codes were also given).
    """

    def __init__(
        self,
        command: str,
        *,
        counter: InvocationCounter | None = None,
        config: Config | None = None,
    ) -> None:
        self.command = command
        self._counter = counter or default_counter
        self._config = config
        self._working_directory: str | Path | None = None
        self._environment: dict[str, str] = {}
        self._run_as_user: RunAsUser | None = None
        self._success_codes: frozenset[int] | None = frozenset({0})
        self._success_explicit = False
        self._fail_codes: frozenset[int] | None = None
        self._stdout_handlers: list[Callable[[str], None]] = []
        self._stderr_handlers: list[Callable[[str], None]] = []
        self.invocation: int | None = None

    def in_dir(self, path: str | Path) -> "FluidInvoker":
        self._working_directory = path
        return self

    def with_env(self, **variables: str) -> "FluidInvoker":
        self._environment.update(variables)
        return self

    def as_user(self, user: RunAsUser) -> "FluidInvoker":
        self._run_as_user = user
        return self

    def success_codes(self, *codes: int) -> "FluidInvoker":
        self._success_codes = frozenset(codes)
        self._success_explicit = True
        return self

    def fail_codes(self, *codes: int) -> "FluidInvoker":
        self._fail_codes = frozenset(codes)
        if not self._success_explicit:
            self._success_codes = None
        return self

    def on_stdout_text(self, handler: Callable[[str], None]) -> "FluidInvoker":
        self._stdout_handlers.append(handler)
        return self

    def on_stderr_text(self, handler: Callable[[str], None]) -> "FluidInvoker":
        self._stderr_handlers.append(handler)
        return self

    def is_success(self, exit_code: int) -> bool:
        if self._fail_codes is not None and exit_code in self._fail_codes:
            return False
        if self._success_codes is not None:
            return exit_code in self._success_codes
        return True

    def build(self) -> ProcessController:
        """Create the configured controller without starting it."""
        controller = ProcessController(
            self.command,
            working_directory=self._working_directory,
            environment=self._environment,
            run_as_user=self._run_as_user,
            capture_entire_stdout=True,
            capture_entire_stderr=True,
            config=self._config,
        )
        for handler in self._stdout_handlers:
            controller.stdout_text += handler
        for handler in self._stderr_handlers:
            controller.stderr_text += handler
        return controller

    def go(self, stdin: bytes | None = None) -> ProcessController:
        """Run to completion and check the exit code.

        Returns:
            The finished controller

        Raises:
            CommandFailedError: If the exit code is not a success code
            CommandAbortedError: If the command was aborted
            OutputReadError: If reading stdout or stderr failed part-way
        """
        controller = self.build()
        self._begin()
        controller.start_and_wait(stdin)
        return self._check(controller)

    def go_get_output(self, stdin: bytes | None = None) -> bytes:
        return self.go(stdin).entire_stdout

    def go_get_output_text(self, stdin: bytes | None = None) -> str:
        return self.go_get_output(stdin).decode("utf-8", errors="replace")

    async def go_async(self, stdin: bytes | None = None) -> ProcessController:
        """Async variant of ``go()``; cancelling the caller aborts the command."""
        controller = self.build()
        self._begin()
        try:
            await anyio.to_thread.run_sync(controller.start, stdin)
            await controller.wait_async()
        except anyio.get_cancelled_exc_class():
            if controller.state == State.STARTED:
                logger.debug(f"[#{self.invocation}] Cancelled, aborting {self.command!r}")
                controller.abort()
            raise
        return self._check(controller)

    def _begin(self) -> None:
        self.invocation = self._counter.next()
        logger.debug(f"[#{self.invocation}] Running {self.command!r}")

    def _check(self, controller: ProcessController) -> ProcessController:
        if controller.state == State.ABORTED:
            raise CommandAbortedError(self.command)

        exit_code = controller.exit_code
        logger.debug(f"[#{self.invocation}] Exited with code {exit_code}")
        if not self.is_success(exit_code):
            raise CommandFailedError(
                self.command,
                exit_code,
                stdout=controller.entire_stdout,
                stderr=controller.entire_stderr,
            )
        return controller


def run(*args: str, counter: InvocationCounter | None = None) -> FluidInvoker:
    """Prepare to run a program with arguments, quoted for the interpreter."""
    return FluidInvoker(join_command(args), counter=counter)


def run_raw(command: str, counter: InvocationCounter | None = None) -> FluidInvoker:
    """Prepare to run a command string exactly as given to the interpreter."""
    return FluidInvoker(command, counter=counter)

