"""
Command-line interface for connecting AI command-line tools.

Each subcommand maps onto one SessionController operation. Controller
events (status updates, log lines, completion notices) are printed as
they arrive so the user can follow a login while it runs.
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

import structlog

from . import __version__
from .controller import SessionController
from .events import (
    CREDENTIALS_STORED,
    LOG,
    PREREQUISITE_STATUS,
    SHOW_SUCCESS,
    STATUS_UPDATE,
)
from .tools import TOOLS, ToolId
from .utils.config import Config, load_config
from .utils.logging import close_logging, setup_logging

logger = structlog.get_logger(__name__)

TOOL_CHOICES = [str(tool_id) for tool_id in ToolId]


class ConnectCLI:
    """Terminal front end for the session controller."""

    def __init__(self, config: Config, controller: Optional[SessionController] = None):
        """
        Initialize the CLI.

        Args:
            config: Loaded application configuration
            controller: Controller override (built from config by default)
        """
        self.config = config
        self.controller = controller or SessionController(config)
        self.controller.emitter.subscribe(self.on_event)

    def on_event(self, event: str, payload: Dict[str, Any]) -> None:
        """Print controller events."""
        if event == LOG:
            print(f"   {payload.get('message')}")
        elif event == STATUS_UPDATE:
            if payload.get("status") == "error":
                print(f"❌ {payload.get('message')}")
            else:
                print(f"🔄 {payload.get('message')}")
        elif event == PREREQUISITE_STATUS:
            mark = "✅" if payload.get("status") == "ok" else "⚠️ "
            print(f"{mark} {payload.get('message')}")
        elif event == CREDENTIALS_STORED:
            if payload.get("success"):
                print("☁️  Credentials forwarded to token store")
            else:
                print(f"⚠️  Token store: {payload.get('message')}")
        elif event == SHOW_SUCCESS:
            print(f"🎉 {payload.get('message')}")

    @staticmethod
    def _fail(result: Dict[str, Any]) -> int:
        print(f"❌ {result.get('error') or result.get('message')}")
        return 1

    async def connect(self, tool_ids: List[str]) -> int:
        """
        Connect one or more tools.

        Args:
            tool_ids: Tools to connect, in order

        Returns:
            Exit code (0 when every tool connected, 1 otherwise)
        """
        print(f"🤖 CLI Connect {__version__}")
        print("=" * 50)
        await self.controller.startup()

        exit_code = 0
        for tool_id in tool_ids:
            tool = TOOLS[ToolId(tool_id)]
            print(f"\n🔌 Connecting {tool.name}...")
            result = await self.controller.connect(tool_id)
            if not result["success"]:
                exit_code = self._fail(result)
                continue
            if result.get("login_skipped"):
                print("   Login skipped, existing credentials found")
            credentials = result.get("credentials") or {}
            if credentials.get("path"):
                print(f"   Credentials: {credentials['path']}")
            elif credentials.get("service"):
                print(f"   Credentials: Keychain ({credentials['service']})")
        return exit_code

    async def login(self, tool_id: str) -> int:
        result = await self.controller.login(tool_id)
        if not result["success"]:
            return self._fail(result)
        print(f"✅ {result['message']}")
        return 0

    async def logout(self, tool_id: str, confirm: bool = False) -> int:
        """
        Remove a tool's credentials.

        Args:
            tool_id: Tool to log out
            confirm: Skip confirmation prompt

        Returns:
            Exit code (0 for success, 1 for failure)
        """
        tool = TOOLS[ToolId(tool_id)]
        if not confirm:
            response = input(f"Remove {tool.name} credentials? (y/N): ").strip().lower()
            if response != "y":
                print("Logout cancelled")
                return 0

        print(f"🔄 Logging out of {tool.name}...")
        result = await self.controller.logout(tool_id)
        if not result["success"]:
            return self._fail(result)

        print(f"✅ {result['message']}")
        for removed in result.get("removed", []):
            print(f"   Removed {removed}")
        return 0

    async def status(self, verbose: bool = False) -> int:
        """Show install and authentication status of every tool."""
        print("🤖 CLI Connect - Tool Status")
        print("=" * 50)

        exit_code = 0
        for tool_id, tool in TOOLS.items():
            result = await self.controller.status(str(tool_id))
            if not result["success"]:
                exit_code = self._fail(result)
                continue
            installed = "✅ Installed" if result["installed"] else "❌ Not installed"
            authenticated = "✅ Authenticated" if result["authenticated"] else "❌ Not authenticated"
            print(f"{tool.name:<14} {installed:<18} {authenticated}")

            if verbose:
                timeout = self.config.login.timeout_for(str(tool_id), tool.login_timeout)
                print(f"   Callback Port: {tool.port}")
                print(f"   Login Timeout: {int(timeout)}s")
                for path in tool.credential_paths:
                    print(f"   Credential File: {path}")

        if verbose:
            print("\n⚙️  Configuration:")
            print(f"   Embedded Browser: {self.config.browser.enabled}")
            print(f"   Callback Host: {self.config.callback.host}")
            token_store = self.controller.token_store
            if token_store.enabled:
                health = await token_store.health_check()
                reachable = "✅ Reachable" if health["success"] else f"❌ {health['message']}"
                print(f"   Token Store: {self.config.token_store.base_url} ({reachable})")
            else:
                print("   Token Store: not configured")
        return exit_code

    async def install(self, tool_id: str) -> int:
        result = await self.controller.install(tool_id)
        if not result["success"]:
            return self._fail(result)
        print(f"✅ {result['message']}")
        return 0

    async def extract(self, tool_id: str) -> int:
        result = await self.controller.extract_credentials(tool_id)
        if not result["success"]:
            return self._fail(result)
        print(f"✅ {result['message']}")
        print(json.dumps(result["credentials"], indent=2))
        return 0

    async def copy(self, tool_id: str, print_text: bool = False) -> int:
        result = await self.controller.copy_credentials(tool_id)
        if not result["success"]:
            return self._fail(result)
        if result["copied"]:
            print(f"📋 {result['message']}")
        else:
            print(f"⚠️  {result['message']}")
        if print_text or not result["copied"]:
            print(result["copy_text"])
        return 0

    async def close(self) -> None:
        await self.controller.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cli-connect",
        description="CLI Connect - automated logins for AI command-line tools"
    )
    parser.add_argument("--config", metavar="PATH", help="TOML configuration file")
    parser.add_argument("--log-level", metavar="LEVEL", help="Override the configured log level")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    connect_parser = subparsers.add_parser("connect", help="Install, log in and extract credentials")
    connect_parser.add_argument("tools", nargs="*", metavar="TOOL",
                                help=f"Tools to connect ({', '.join(TOOL_CHOICES)}; default: all)")

    login_parser = subparsers.add_parser("login", help="Run a tool's login flow")
    login_parser.add_argument("tool", choices=TOOL_CHOICES)

    logout_parser = subparsers.add_parser("logout", help="Remove a tool's credentials")
    logout_parser.add_argument("tool", choices=TOOL_CHOICES)
    logout_parser.add_argument("--confirm", action="store_true",
                               help="Skip confirmation prompt")

    status_parser = subparsers.add_parser("status", help="Show install and authentication status")
    status_parser.add_argument("--verbose", "-v", action="store_true",
                               help="Show detailed information")

    install_parser = subparsers.add_parser("install", help="Install a tool")
    install_parser.add_argument("tool", choices=TOOL_CHOICES)

    extract_parser = subparsers.add_parser("extract", help="Show a tool's credential metadata")
    extract_parser.add_argument("tool", choices=TOOL_CHOICES)

    copy_parser = subparsers.add_parser("copy", help="Copy a tool's credentials to the clipboard")
    copy_parser.add_argument("tool", choices=TOOL_CHOICES)
    copy_parser.add_argument("--print", dest="print_text", action="store_true",
                             help="Also print the copied text")

    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "connect":
        unknown = [t for t in args.tools if t not in TOOL_CHOICES]
        if unknown:
            parser.error(f"unknown tool: {unknown[0]} (choose from {', '.join(TOOL_CHOICES)})")

    config = load_config(args.config)
    if args.log_level:
        config.app.log_level = args.log_level
    setup_logging(config.app.log_level, config.app.log_file, config.app.json_logs)
    logger.info("Running command", command=args.command)

    cli = ConnectCLI(config)
    try:
        if args.command == "connect":
            return await cli.connect(args.tools or TOOL_CHOICES)
        elif args.command == "login":
            return await cli.login(args.tool)
        elif args.command == "logout":
            return await cli.logout(args.tool, confirm=args.confirm)
        elif args.command == "status":
            return await cli.status(verbose=args.verbose)
        elif args.command == "install":
            return await cli.install(args.tool)
        elif args.command == "extract":
            return await cli.extract(args.tool)
        elif args.command == "copy":
            return await cli.copy(args.tool, print_text=args.print_text)
        else:
            parser.print_help()
            return 1
    finally:
        await cli.close()
        close_logging()


def run() -> None:
    """Console-script entry point."""
    try:
        exit_code = asyncio.run(main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\n❌ Interrupted by user")
        sys.exit(1)
    except (RuntimeError, ValueError) as e:
        print(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
