"""Tree-wide suspend, resume and kill.

Each operation enumerates, at the moment of the call, the root process and
every process transitively descended from it, then applies the same action to
all of them. A child spawned after enumeration but before the action
completes is missed; pausing before aborting narrows that window but does not
close it.

Platform-specific behaviour sits behind the ``ProcessTree`` interface:

- POSIX: SIGSTOP / SIGCONT / SIGKILL per process, plus the root's process
  group for kill (the controller starts every command in a new session).
- Windows: psutil's suspend/resume/kill, which operate on every thread of a
  process.
"""

from __future__ import annotations

import logging
import os
import signal
import sys
from abc import ABC, abstractmethod
from collections.abc import Callable

import psutil

__all__ = [
    "ProcessTree",
    "PosixProcessTree",
    "WindowsProcessTree",
    "get_process_tree",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


class ProcessTree(ABC):
    """Suspend/resume/kill a process and all of its descendants."""

    def processes(self, pid: int) -> list[psutil.Process]:
        """Enumerate the root process followed by all its descendants.

        Args:
            pid: Root process ID

        Returns:
            Processes in the tree; empty if the root no longer exists
        """
        try:
            root = psutil.Process(pid)
        except psutil.NoSuchProcess:
            logger.debug(f"Process {pid} no longer exists")
            return []

        try:
            children = root.children(recursive=True)
        except psutil.NoSuchProcess:
            children = []

        return [root, *children]

    def descendant_pids(self, pid: int) -> list[int]:
        """PIDs of every process transitively spawned by ``pid``."""
        return [proc.pid for proc in self.processes(pid)[1:]]

    @abstractmethod
    def suspend(self, pid: int) -> int:
        """Suspend every process in the tree. Returns the number affected."""

    @abstractmethod
    def resume(self, pid: int) -> int:
        """Resume every process in the tree. Returns the number affected."""

    @abstractmethod
    def kill(self, pid: int, process_group: bool = False) -> int:
        """Forcefully terminate every process in the tree.

        Args:
            pid: Root process ID
            process_group: The root was started as a process group leader;
                signal the whole group as well, which also reaches
                descendants whose parent has already exited

        Returns:
            Number of processes signalled
        """

    def kill_group(self, pgid: int) -> None:
        """Kill every process in a process group. No-op where groups are not used."""

    def _apply(
        self,
        procs: list[psutil.Process],
        action: Callable[[psutil.Process], None],
        verb: str,
    ) -> int:
        count = 0
        for proc in procs:
            try:
                action(proc)
                count += 1
            except psutil.NoSuchProcess:
                logger.debug(f"Process {proc.pid} vanished before it could be {verb}")
            except psutil.AccessDenied:
                logger.debug(f"Access denied, process {proc.pid} not {verb}")
        logger.debug(f"{verb.capitalize()} {count} of {len(procs)} process(es)")
        return count


class PosixProcessTree(ProcessTree):
    """Signal-based implementation for Linux, macOS and other POSIX systems."""

    def suspend(self, pid: int) -> int:
        # Root first so it stops spawning while descendants are being stopped
        procs = self.processes(pid)
        return self._apply(procs, lambda p: p.send_signal(signal.SIGSTOP), "suspended")

    def resume(self, pid: int) -> int:
        procs = self.processes(pid)
        return self._apply(list(reversed(procs)), lambda p: p.send_signal(signal.SIGCONT), "resumed")

    def kill(self, pid: int, process_group: bool = False) -> int:
        # Enumerate before killing: once the root dies its children are reparented
        procs = self.processes(pid)
        if process_group:
            self.kill_group(pid)
        return self._apply(procs, lambda p: p.send_signal(signal.SIGKILL), "killed")

    def kill_group(self, pgid: int) -> None:
        if pgid == os.getpgrp():
            return
        try:
            os.killpg(pgid, signal.SIGKILL)
            logger.debug(f"Sent SIGKILL to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed for pgid={pgid}: {e}")


class WindowsProcessTree(ProcessTree):
    """Thread-suspension implementation for Windows."""

    def suspend(self, pid: int) -> int:
        procs = self.processes(pid)
        return self._apply(procs, lambda p: p.suspend(), "suspended")

    def resume(self, pid: int) -> int:
        procs = self.processes(pid)
        return self._apply(list(reversed(procs)), lambda p: p.resume(), "resumed")

    def kill(self, pid: int, process_group: bool = False) -> int:
        procs = self.processes(pid)
        return self._apply(procs, lambda p: p.kill(), "killed")


def get_process_tree() -> ProcessTree:
    """Return the ProcessTree implementation for the running platform."""
    if IS_WINDOWS:
        return WindowsProcessTree()
    return PosixProcessTree()
