"""Process controller: launch, stream, pause/resume and abort a command.

procctl runtime module

This module provides:
- Launching a command through the platform interpreter in its own
  session/process group, with stdout/stderr streamed as bytes and UTF-8 text
- A NOT_STARTED -> STARTED -> EXITED | ABORTED state machine
- Tree-wide pause with optional auto-resume, and tree-wide abort
- Exactly-once end notification that happens after all output is delivered

Key design points:
- The exit watcher only finishes once both readers have drained, so any
  terminal state observed by a caller implies that all output was delivered
- One lock guards the pause/timer bookkeeping and state transitions; process
  signalling and event handlers never run while it is held, except for the
  suspend/resume that the pause bookkeeping itself decides on
- Event handlers run on reader, watcher or timer threads
"""

from __future__ import annotations

import logging
import math
import os
import subprocess
import sys
import threading
import time
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import anyio

from .config import Config, get_config
from .errors import (
    InvalidOperationError,
    ProcessStartError,
    UnsupportedPlatformError,
)
from .escaping import join_command
from .events import EventHook
from .output_reader import OutputReader
from .process_tree import ProcessTree, get_process_tree
from .types import INDEFINITE, RunAsUser, State

__all__ = [
    "EndedWaitHandle",
    "ProcessController",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

# Interval at which the exit watcher re-checks that both readers have ended
DRAIN_POLL_INTERVAL = 0.01

_CONFIG_FIELDS = (
    "command",
    "working_directory",
    "environment",
    "run_as_user",
    "capture_entire_stdout",
    "capture_entire_stderr",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _pause_seconds(duration: float | timedelta | None) -> float | None:
    """Normalize a pause duration to seconds; None means indefinite."""
    if duration is None:
        return None
    if isinstance(duration, timedelta):
        if duration == timedelta.max:
            return None
        seconds = duration.total_seconds()
    else:
        seconds = float(duration)
    if math.isnan(seconds):
        raise ValueError("Pause duration must not be NaN")
    if seconds <= 0:
        return seconds
    # Beyond what a timer can wait for or a wake time can represent
    if seconds > threading.TIMEOUT_MAX:
        return None
    try:
        _now() + timedelta(seconds=seconds)
    except OverflowError:
        return None
    return seconds


class EndedWaitHandle:
    """Read-only view of the controller's end signal.

    Becomes set after the command has ended and every ``command_ended``
    handler has returned.
    """

    def __init__(self, event: threading.Event) -> None:
        self._event = event

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def is_set(self) -> bool:
        return self._event.is_set()


class ProcessController:
    """Runs one command and controls its whole process tree.

    The command goes through the platform interpreter (``/bin/sh -c`` or
    ``cmd.exe /C``), so PATH lookup, shell builtins and script associations
    all work. A controller runs exactly one command; create a new instance to
    run another.

    When the command completes, whether by exiting or by being aborted,
    ``state`` changes first, then ``command_ended`` fires, and finally
    ``ended_wait_handle`` is set. By then all output has been delivered
    through the data/text events and, if requested, captured.

    All public members may be used from any thread.

    Example:
        ```python
        controller = ProcessController("make -j8", capture_entire_stdout=True)
        controller.stdout_text += lambda text: print(text, end="")
        controller.start()
        controller.pause(5.0)  # suspend the whole tree for five seconds
        controller.wait()
        print(controller.exit_code)
        ```

    Attributes:
        command_ended: Fired once after the command ended and output drained
        command_resumed: Fired on every resume, manual or timer-driven
        stdout_data / stderr_data: Fired with raw byte chunks
        stdout_text / stderr_text: Fired with decoded text chunks
        ended_wait_handle: Waitable end signal
    """

    def __init__(
        self,
        command: str | None = None,
        *,
        working_directory: str | Path | None = None,
        environment: Mapping[str, str] | None = None,
        run_as_user: RunAsUser | None = None,
        capture_entire_stdout: bool = False,
        capture_entire_stderr: bool = False,
        config: Config | None = None,
        process_tree: ProcessTree | None = None,
    ) -> None:
        self._config = config or get_config()
        self._tree = process_tree or get_process_tree()

        self._command = command
        self._working_directory = working_directory
        self._environment = dict(environment) if environment else {}
        self._run_as_user = run_as_user
        self._capture_stdout = capture_entire_stdout
        self._capture_stderr = capture_entire_stderr

        self.command_ended = EventHook("command_ended")
        self.command_resumed = EventHook("command_resumed")
        self.stdout_data = EventHook("stdout_data")
        self.stderr_data = EventHook("stderr_data")
        self.stdout_text = EventHook("stdout_text")
        self.stderr_text = EventHook("stderr_text")

        self._state = State.NOT_STARTED
        self._lock = threading.Lock()
        self._pause_timer: threading.Timer | None = None
        self._paused_until: datetime | None = None
        self._started = threading.Event()
        self._ended = threading.Event()
        self.ended_wait_handle = EndedWaitHandle(self._ended)

        self._process: subprocess.Popen[bytes] | None = None
        self._stdout_reader: OutputReader | None = None
        self._stderr_reader: OutputReader | None = None
        self._watcher: threading.Thread | None = None
        self._exit_code: int | None = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _only_before_started(self) -> None:
        if self._state != State.NOT_STARTED:
            raise InvalidOperationError(
                "This property cannot be modified after the command has been started."
            )

    @property
    def command(self) -> str | None:
        """The command string, as passed to the interpreter."""
        return self._command

    @command.setter
    def command(self, value: str | None) -> None:
        self._only_before_started()
        self._command = value

    def set_command(self, *args: str) -> None:
        """Set ``command`` from a program and its arguments, quoting as needed.

        Example:
            ``controller.set_command("/opt/My Tool/tool", "-f", "some file.txt")``
        """
        self.command = join_command(args)

    @property
    def working_directory(self) -> str | Path | None:
        return self._working_directory

    @working_directory.setter
    def working_directory(self, value: str | Path | None) -> None:
        self._only_before_started()
        self._working_directory = value

    @property
    def environment(self) -> dict[str, str]:
        """Variables merged over the inherited environment. Returns a copy."""
        return dict(self._environment)

    @environment.setter
    def environment(self, value: Mapping[str, str] | None) -> None:
        self._only_before_started()
        self._environment = dict(value) if value else {}

    @property
    def run_as_user(self) -> RunAsUser | None:
        return self._run_as_user

    @run_as_user.setter
    def run_as_user(self, value: RunAsUser | None) -> None:
        self._only_before_started()
        self._run_as_user = value

    @property
    def capture_entire_stdout(self) -> bool:
        """Keep a copy of all stdout. Can use a lot of memory; off by default."""
        return self._capture_stdout

    @capture_entire_stdout.setter
    def capture_entire_stdout(self, value: bool) -> None:
        self._only_before_started()
        self._capture_stdout = value

    @property
    def capture_entire_stderr(self) -> bool:
        """Keep a copy of all stderr. Can use a lot of memory; off by default."""
        return self._capture_stderr

    @capture_entire_stderr.setter
    def capture_entire_stderr(self, value: bool) -> None:
        self._only_before_started()
        self._capture_stderr = value

    def configure(self, **settings: Any) -> "ProcessController":
        """Set several configuration properties at once.

        Args:
            **settings: Any of command, working_directory, environment,
                run_as_user, capture_entire_stdout, capture_entire_stderr

        Raises:
            InvalidOperationError: If the command has already been started
            TypeError: For an unknown setting
        """
        self._only_before_started()
        for name, value in settings.items():
            if name not in _CONFIG_FIELDS:
                raise TypeError(f"Unknown setting: {name}")
            setattr(self, name, value)
        return self

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> State:
        """Logical state of the controller (not a live view of the process)."""
        return self._state

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def exit_code(self) -> int:
        """Exit code of the command.

        Raises:
            InvalidOperationError: Unless the command exited on its own
            OutputReadError: If reading stdout or stderr failed part-way, so
                the output delivered through the events is incomplete
        """
        if self._state != State.EXITED:
            raise InvalidOperationError(
                "This property can only be read if the command has exited and was not aborted."
            )
        for reader in (self._stdout_reader, self._stderr_reader):
            if reader is not None:
                reader.check_error()
        assert self._exit_code is not None
        return self._exit_code

    @property
    def stdout_error(self) -> BaseException | None:
        """The I/O error that cut stdout short, if any."""
        return self._stdout_reader.error if self._stdout_reader is not None else None

    @property
    def stderr_error(self) -> BaseException | None:
        """The I/O error that cut stderr short, if any."""
        return self._stderr_reader.error if self._stderr_reader is not None else None

    @property
    def entire_stdout(self) -> bytes:
        """All stdout output. Interleaving with stderr is not preserved."""
        return self._entire_output(self._capture_stdout, self._stdout_reader, "stdout")

    @property
    def entire_stderr(self) -> bytes:
        """All stderr output. Interleaving with stdout is not preserved."""
        return self._entire_output(self._capture_stderr, self._stderr_reader, "stderr")

    def _entire_output(
        self,
        capture: bool,
        reader: OutputReader | None,
        name: str,
    ) -> bytes:
        if not capture:
            raise InvalidOperationError(
                f"This property can only be read if capture_entire_{name} is true."
            )
        if not self._ended.is_set():
            raise InvalidOperationError(
                "This property can only be read once the command has exited or was aborted."
            )
        if reader is None:
            # Process creation failed; nothing was ever read
            return b""
        return reader.get_entire_output()

    @property
    def paused_until(self) -> datetime | None:
        """Scheduled wake time (UTC), ``INDEFINITE``, or None if not paused."""
        return self._paused_until

    @property
    def is_paused(self) -> bool:
        return self._paused_until is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, stdin: bytes | None = None) -> None:
        """Start the command with the current configuration.

        Returns once the process has been created and has had a moment to
        settle, without waiting for the command to finish.

        Args:
            stdin: Bytes written to the command's stdin, which is then closed.
                If None, stdin is connected to the null device.

        Raises:
            InvalidOperationError: If already started or no command is set
            UnsupportedPlatformError: If run_as_user is set on Windows
            ProcessStartError: If the process could not be created; the
                controller is then ABORTED and its end sequence has completed
        """
        if not self._command:
            raise InvalidOperationError("No command has been configured.")
        args, kwargs = self._build_popen_args()

        with self._lock:
            if self._state != State.NOT_STARTED:
                raise InvalidOperationError(
                    "This command has already been started, and cannot be started again."
                )
            self._state = State.STARTED

        try:
            self._process = subprocess.Popen(
                args,
                stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
                **kwargs,
            )
        except (OSError, ValueError) as e:
            logger.debug(f"Failed to start command={self._command!r}: {e}")
            with self._lock:
                self._state = State.ABORTED
            self._started.set()
            self._finish()
            raise ProcessStartError(self._command, str(e)) from e

        logger.debug(
            f"Started subprocess pid={self._process.pid} "
            f"command={self._command!r} cwd={self._working_directory}"
        )

        assert self._process.stdout is not None and self._process.stderr is not None
        self._stdout_reader = OutputReader(
            self._process.stdout,
            "stdout",
            on_data=self.stdout_data.fire,
            on_text=self.stdout_text.fire,
            capture=self._capture_stdout,
            coalesce_interval=self._config.coalesce_interval,
            read_size=self._config.read_size,
        )
        self._stderr_reader = OutputReader(
            self._process.stderr,
            "stderr",
            on_data=self.stderr_data.fire,
            on_text=self.stderr_text.fire,
            capture=self._capture_stderr,
            coalesce_interval=self._config.coalesce_interval,
            read_size=self._config.read_size,
        )
        self._stdout_reader.start()
        self._stderr_reader.start()

        if stdin is not None:
            threading.Thread(
                target=self._write_stdin,
                args=(stdin,),
                daemon=True,
                name=f"procctl-stdin-{self._process.pid}",
            ).start()

        self._watcher = threading.Thread(
            target=self._watch,
            daemon=True,
            name=f"procctl-watcher-{self._process.pid}",
        )
        self._watcher.start()

        # Lets a pause() issued right after start() reach the real process
        time.sleep(self._config.start_settle)
        self._started.set()

    def start_and_wait(
        self,
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> bool:
        """Start the command and block until it has ended.

        Returns:
            False if ``timeout`` elapsed first (the command keeps running)
        """
        self.start(stdin)
        return self.wait(timeout)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the command has ended. Returns False on timeout."""
        return self._ended.wait(timeout)

    async def wait_async(self) -> None:
        """Wait for the command to end without blocking the event loop."""
        if self._ended.is_set():
            return
        await anyio.to_thread.run_sync(self._ended.wait, abandon_on_cancel=True)

    def _build_popen_args(self) -> tuple[str | list[str], dict[str, Any]]:
        """Build the interpreter command line and platform-specific kwargs."""
        kwargs: dict[str, Any] = {}
        args: str | list[str]

        if self._working_directory is not None:
            kwargs["cwd"] = str(self._working_directory)

        if self._environment:
            kwargs["env"] = {**os.environ, **self._environment}

        if IS_WINDOWS:
            if self._run_as_user is not None:
                raise UnsupportedPlatformError(
                    "Running as another user is not supported on Windows."
                )
            comspec = os.environ.get("COMSPEC", "cmd.exe")
            # /S: strip exactly the outer quotes, leave the rest of the line alone
            args = f'"{comspec}" /S /C "{self._command}"'
            kwargs["creationflags"] = (
                subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW
            )
        else:
            args = ["/bin/sh", "-c", self._command or ""]
            kwargs["start_new_session"] = True
            if self._run_as_user is not None:
                kwargs["user"] = self._run_as_user.username

        return args, kwargs

    def _write_stdin(self, data: bytes) -> None:
        assert self._process is not None and self._process.stdin is not None
        try:
            self._process.stdin.write(data)
        except BrokenPipeError:
            logger.debug(f"pid={self._process.pid} closed stdin before reading all input")
        except OSError as e:
            logger.warning(f"Error writing stdin of pid={self._process.pid}: {e}")
        finally:
            try:
                self._process.stdin.close()
            except OSError as e:
                logger.debug(f"Error closing stdin of pid={self._process.pid}: {e}")

    def _watch(self) -> None:
        """Wait for exit, then drain, record the exit code and notify."""
        assert self._process is not None
        assert self._stdout_reader is not None and self._stderr_reader is not None

        returncode = self._process.wait()
        logger.debug(f"Subprocess exited pid={self._process.pid} returncode={returncode}")

        readers = (self._stdout_reader, self._stderr_reader)
        while not all(reader.ended for reader in readers):
            time.sleep(DRAIN_POLL_INTERVAL)

        self._exit_code = returncode
        self._finish()

    def _finish(self) -> None:
        with self._lock:
            self._cancel_pause_timer_locked()
            self._paused_until = None
            if self._state != State.ABORTED:
                self._state = State.EXITED
            state = self._state

        logger.debug(f"Command ended state={state.value} command={self._command!r}")
        try:
            self.command_ended.fire()
        finally:
            self._ended.set()

    def abort(self) -> None:
        """Kill the process and all its descendants.

        ``state`` becomes ABORTED immediately; ``command_ended`` and the wait
        handle follow once the processes are gone and output has drained.
        A child being spawned at exactly the wrong moment can escape; pause
        first to narrow that window.

        Raises:
            InvalidOperationError: If the command has not been started
        """
        with self._lock:
            if self._state == State.NOT_STARTED:
                raise InvalidOperationError(
                    "Cannot abort the command because it has not been started yet."
                )
            if self._state != State.STARTED:
                return
            self._state = State.ABORTED
            self._cancel_pause_timer_locked()
            self._paused_until = None

        self._started.wait()
        if self._process is None:
            return

        pid = self._process.pid
        if self._process.returncode is not None:
            # Root already reaped and its pid may be reused; only the group
            # id is still reserved while descendants keep it alive
            self._tree.kill_group(pid)
            logger.debug(f"Aborted command pid={pid} after the root had exited")
            return
        killed = self._tree.kill(pid, process_group=not IS_WINDOWS)
        logger.debug(f"Aborted command pid={pid}, killed {killed} process(es)")

    # ------------------------------------------------------------------
    # Pause / resume
    # ------------------------------------------------------------------

    def pause(self, duration: float | timedelta | None = None) -> None:
        """Suspend every process in the tree.

        If already paused, the command stays paused for at least
        ``duration`` from now; an earlier wake time is never brought forward.

        Args:
            duration: Seconds or a timedelta. None, ``math.inf`` or
                ``timedelta.max`` pause indefinitely, as does any duration too
                long to schedule. Zero or negative durations do nothing.

        Raises:
            InvalidOperationError: If not started yet or aborted
            ValueError: If duration is NaN
        """
        if self._state == State.EXITED:
            return
        if self._state in (State.NOT_STARTED, State.ABORTED):
            raise InvalidOperationError(
                "Cannot pause a command that has not been started yet or has been aborted."
            )

        seconds = _pause_seconds(duration)
        if seconds is not None and seconds <= 0:
            return

        self._started.wait()
        with self._lock:
            if self._state != State.STARTED or self._process is None:
                return

            was_paused = self._paused_until is not None
            if seconds is None:
                self._paused_until = INDEFINITE
                self._cancel_pause_timer_locked()
            elif self._paused_until != INDEFINITE:
                due = _now() + timedelta(seconds=seconds)
                if self._paused_until is None or due > self._paused_until:
                    self._paused_until = due
                # An existing timer reschedules itself if it fires early
                if self._pause_timer is None:
                    self._schedule_resume_locked(seconds)

            if not was_paused:
                count = self._tree.suspend(self._process.pid)
                logger.debug(
                    f"Paused pid={self._process.pid} ({count} process(es)) "
                    f"until {self._paused_until}"
                )

    def resume_paused(self) -> None:
        """Resume a paused command immediately, cancelling any timer.

        Does nothing if the command is not paused or has exited.

        Raises:
            InvalidOperationError: If not started yet or aborted
        """
        if self._state in (State.NOT_STARTED, State.ABORTED):
            raise InvalidOperationError(
                "Cannot resume a command that has not been started yet or has been aborted."
            )
        self._resume(from_timer=False)

    def _schedule_resume_locked(self, delay: float) -> None:
        timer = threading.Timer(delay, self._on_pause_timer)
        timer.daemon = True
        timer.name = f"procctl-resume-{self.pid}"
        self._pause_timer = timer
        timer.start()

    def _cancel_pause_timer_locked(self) -> None:
        if self._pause_timer is not None:
            self._pause_timer.cancel()
            self._pause_timer = None

    def _on_pause_timer(self) -> None:
        self._resume(from_timer=True)

    def _resume(self, from_timer: bool) -> None:
        with self._lock:
            if from_timer:
                if threading.current_thread() is not self._pause_timer:
                    # Cancelled or superseded while waiting for the lock
                    return
                self._pause_timer = None

            if (
                self._paused_until is None
                or self._process is None
                or self._state != State.STARTED
            ):
                return

            if from_timer:
                # The wake time may have been extended since this timer was set
                remaining = (self._paused_until - _now()).total_seconds()
                if remaining > 0:
                    self._schedule_resume_locked(remaining)
                    return
            else:
                self._cancel_pause_timer_locked()

            self._paused_until = None
            count = self._tree.resume(self._process.pid)
            logger.debug(f"Resumed pid={self._process.pid} ({count} process(es))")

        self.command_resumed.fire()

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> "ProcessController":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._state == State.STARTED:
            self.abort()
        if self._state != State.NOT_STARTED:
            self.wait()

    def __repr__(self) -> str:
        return (
            f"ProcessController(command={self._command!r}, "
            f"state={self._state.value}, "
            f"pid={self.pid})"
        )
