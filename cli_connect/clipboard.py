"""
System clipboard access through the platform clipboard commands.
"""

import asyncio
import shutil
import sys
from typing import List, Optional, Sequence, Tuple

import structlog

from .utils.process import run_command

logger = structlog.get_logger(__name__)

LINUX_BACKENDS: Tuple[Tuple[str, ...], ...] = (
    ("wl-copy",),
    ("xclip", "-selection", "clipboard"),
    ("xsel", "--clipboard", "--input"),
)


def backends(platform: Optional[str] = None) -> List[Sequence[str]]:
    """Clipboard commands to try, in order, for a platform."""
    platform = platform or sys.platform
    if platform == "darwin":
        return [("pbcopy",)]
    if platform == "win32":
        return [("clip",)]
    return [argv for argv in LINUX_BACKENDS if shutil.which(argv[0])]


async def copy_to_clipboard(text: str, platform: Optional[str] = None) -> bool:
    """
    Write text to the system clipboard.

    Returns:
        bool: False when no clipboard command is available or all of them failed
    """
    for argv in backends(platform):
        try:
            result = await run_command(argv, input_data=text, timeout=10)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug("Clipboard command failed", command=argv[0], error=str(e))
            continue
        if result.ok:
            logger.debug("Copied to clipboard", command=argv[0], length=len(text))
            return True
        logger.debug("Clipboard command failed", command=argv[0], exit_code=result.exit_code)

    logger.warning("No working clipboard command")
    return False
