#!/usr/bin/env python3
"""Spawn a long-sleeping child process and sleep alongside it.

Prints the child's pid on the first line of stdout so tests can check that
the whole tree is suspended or killed. The child inherits stdout, so the
stream only reaches EOF once both processes are gone.

Usage:
    python spawn_child.py [--duration SECONDS]
"""

from __future__ import annotations

import argparse
import subprocess
import sys
import time


def main() -> None:
    parser = argparse.ArgumentParser(description="Spawn a sleeping child")
    parser.add_argument("--duration", type=float, default=60.0, help="Sleep duration")
    args = parser.parse_args()

    child = subprocess.Popen(
        [sys.executable, "-c", f"import time; time.sleep({args.duration})"]
    )
    print(child.pid, flush=True)
    time.sleep(args.duration)
    child.wait()


if __name__ == "__main__":
    main()
