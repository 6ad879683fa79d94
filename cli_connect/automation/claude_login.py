"""
Drive an interactive Claude Code session through its first-run and login menus.

Run as ``python -m cli_connect.automation.claude_login``.
"""

import argparse

import pexpect

from .driver import URL_PATTERN, LoginDriver, emit_failed, emit_info, emit_success, emit_url, main

# (screen text, keystrokes); each is answered at most once
PROMPTS = (
    ("Do you trust the files in this folder", "\r"),
    ("Choose the text style", "\r"),
    ("Select login method", "\r"),  # first option: Claude account
    ("Missing API key", "/login\r"),
)

SUCCESS_TEXT = ("Login successful", "Logged in as")


def login(args: argparse.Namespace) -> bool:
    driver = LoginDriver("claude", timeout=args.timeout)
    driver.start()
    emit_info("Starting Claude authentication process...")

    prompt_texts = [text for text, _ in PROMPTS]
    patterns = prompt_texts + [URL_PATTERN] + list(SUCCESS_TEXT) + [pexpect.EOF, pexpect.TIMEOUT]
    url_index = len(prompt_texts)
    success_indexes = range(url_index + 1, url_index + 1 + len(SUCCESS_TEXT))
    eof_index = len(patterns) - 2

    answered = set()
    auth_url = None

    try:
        while True:
            # Once the URL is out the user is signing in; allow them the full window
            timeout = args.auth_timeout if auth_url else args.timeout
            index = driver.expect(patterns, timeout=timeout)

            if index < url_index:
                if index in answered:
                    continue
                answered.add(index)
                text, keys = PROMPTS[index]
                emit_info(f"Answering prompt: {text}")
                driver.send(keys)
            elif index == url_index:
                if auth_url is None:
                    auth_url = driver.group(1)
                    emit_url(auth_url)
                    emit_info("Complete the sign-in in your browser")
            elif index in success_indexes:
                emit_success()
                return True
            elif index == eof_index:
                emit_failed("Claude exited before login completed")
                return False
            else:
                emit_failed("Timed out waiting for login" if auth_url else "No URL detected")
                return False
    finally:
        driver.stop()


if __name__ == "__main__":
    main(login, "Automated Claude Code login")
