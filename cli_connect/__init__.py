"""
CLI Connect - automated OAuth logins for command-line AI tools.

This package drives the interactive login flows of the Codex, Gemini and
Claude command-line tools, intercepts their OAuth redirects and locates the
resulting credentials so they can be verified, copied or forwarded.
"""

__version__ = "0.1.0"
__author__ = "CLI Connect Team"
