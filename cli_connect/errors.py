"""
Error taxonomy for connect, install and login operations.

Every failure that can reach the UI boundary is a ConnectError carrying a
stable ``kind`` tag so callers can tell failures apart without parsing
messages.
"""

from typing import Optional


class ConnectError(Exception):
    """Base class for all connect-flow failures."""
    kind = "error"


class UnknownTool(ConnectError):
    """Raised when a request names a tool that is not in the registry."""
    kind = "unknown_tool"


class PrerequisiteMissing(ConnectError):
    """Raised when a required runtime or automation dependency is absent."""
    kind = "prerequisite_missing"


class InstallFailed(ConnectError):
    """Raised when the package-manager install command fails."""
    kind = "install_failed"

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class SpawnFailed(ConnectError):
    """Raised when the login process could not be started at all."""
    kind = "spawn_failed"


class AuthenticationDenied(ConnectError):
    """Raised when an explicit denial or error was observed."""
    kind = "authentication_denied"


class LoginTimeout(ConnectError):
    """Raised when a login attempt produced no completion signal in time."""
    kind = "timeout"


class LoginProcessFailed(ConnectError):
    """Raised when the login process exits non-zero without a success signal."""
    kind = "process_failed"

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class LoginCancelled(ConnectError):
    """Raised when an attempt is torn down because the application is closing."""
    kind = "cancelled"
