"""
Shared pexpect plumbing for the automation scripts.
"""

import argparse
import os
import sys
from typing import Callable, List, Optional, Sequence

import pexpect

from . import AUTH_URL_MARKER, FAILED_MARKER, INFO_MARKER, SUCCESS_MARKER

# Wide enough that a CLI never wraps a long OAuth URL
TERMINAL_SIZE = (50, 1000)

URL_PATTERN = r"(https://[^\s\)\]\x1b'\"]+)"


def emit(line: str) -> None:
    print(line, flush=True)


def emit_url(url: str) -> None:
    emit(f"{AUTH_URL_MARKER}{url}")


def emit_success() -> None:
    emit(SUCCESS_MARKER)


def emit_failed(reason: str) -> None:
    emit(f"{FAILED_MARKER}{reason}")


def emit_info(message: str) -> None:
    emit(f"{INFO_MARKER}{message}")


class LoginDriver:
    """A CLI running under a pseudo-terminal."""

    def __init__(self, command: str, args: Sequence[str] = (), timeout: float = 60.0):
        self.command = command
        self.args = list(args)
        self.timeout = timeout
        self.child: Optional[pexpect.spawn] = None

    def start(self) -> None:
        """
        Spawn the CLI.

        Raises:
            pexpect.ExceptionPexpect: If the command cannot be started
        """
        self.child = pexpect.spawn(
            self.command,
            self.args,
            env=dict(os.environ),
            encoding="utf-8",
            codec_errors="replace",
            timeout=self.timeout,
            dimensions=TERMINAL_SIZE,
        )

    def expect(self, patterns: List, timeout: Optional[float] = None) -> int:
        return self.child.expect(patterns, timeout=timeout if timeout is not None else self.timeout)

    def group(self, index: int = 1) -> str:
        return self.child.match.group(index)

    def send(self, keys: str) -> None:
        self.child.send(keys)

    @property
    def exit_status(self) -> Optional[int]:
        if self.child is None:
            return None
        if self.child.isalive():
            return None
        self.child.close()
        return self.child.exitstatus

    def stop(self) -> None:
        """Interrupt the CLI and make sure it is gone."""
        if self.child is None or not self.child.isalive():
            return
        self.child.sendcontrol("c")
        try:
            self.child.expect(pexpect.EOF, timeout=2)
        except pexpect.TIMEOUT:
            pass
        self.child.close(force=True)


def parse_args(description: str, argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument("--timeout", type=float, default=60.0,
                        help="Seconds to wait for each prompt")
    parser.add_argument("--auth-timeout", type=float, default=600.0,
                        help="Seconds to wait for the browser sign-in to finish")
    return parser.parse_args(argv)


def run(flow: Callable[[argparse.Namespace], bool], description: str,
        argv: Optional[Sequence[str]] = None) -> int:
    """Run a login flow and translate its outcome into an exit code."""
    args = parse_args(description, argv)
    try:
        ok = flow(args)
    except pexpect.ExceptionPexpect as e:
        emit_failed(str(e).splitlines()[0] if str(e) else "Automation error")
        return 1
    except KeyboardInterrupt:
        emit_failed("Interrupted")
        return 130
    return 0 if ok else 1


def main(flow: Callable[[argparse.Namespace], bool], description: str) -> None:
    sys.exit(run(flow, description))
