"""
Run ``codex login`` under a pseudo-terminal and report its progress.

Run as ``python -m cli_connect.automation.codex_login``.
"""

import argparse

import pexpect

from .driver import URL_PATTERN, LoginDriver, emit_failed, emit_info, emit_success, emit_url, main

SUCCESS_TEXT = "Successfully logged in"


def login(args: argparse.Namespace) -> bool:
    driver = LoginDriver("codex", ["login"], timeout=args.timeout)
    driver.start()
    emit_info("Starting Codex login...")

    # Codex prints its own local server address over plain http first
    patterns = [URL_PATTERN, SUCCESS_TEXT, pexpect.EOF, pexpect.TIMEOUT]
    auth_url = None

    try:
        while True:
            index = driver.expect(patterns, timeout=args.auth_timeout if auth_url else args.timeout)
            if index == 0:
                if auth_url is None:
                    auth_url = driver.group(1)
                    emit_url(auth_url)
                    emit_info("Browser should open automatically for authentication...")
            elif index == 1:
                emit_success()
                return True
            elif index == 2:
                status = driver.exit_status
                if status == 0:
                    emit_success()
                    return True
                emit_failed(f"codex login exited with code {status}")
                return False
            else:
                emit_failed("Timed out waiting for login" if auth_url else "No URL detected")
                return False
    finally:
        driver.stop()


if __name__ == "__main__":
    main(login, "Automated Codex login")
