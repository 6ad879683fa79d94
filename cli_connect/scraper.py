"""
Best-effort heuristics over the terminal output of third-party CLIs.

Nothing here is a protocol: the CLIs print unversioned human text that can
change with any release. Everything that depends on that wording lives in
this module and is pinned by tests against captured transcripts.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from .automation import AUTH_URL_MARKER, FAILED_MARKER, INFO_MARKER, SUCCESS_MARKER


ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"            # CSI
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC
    r"|\x1b[@-Z\\-_]"                     # two-byte escapes
    r"|\[\?\d+[hl]"                       # bare private modes, e.g. [?25l
    r"|\[\d+[ABCDGJK]"                    # bare cursor/erase codes, e.g. [2K
)

URL_CHARS = r"[^\s'\"<>]+"
URL_TERMINATOR = r"(?=[\s'\"<>])"
URL_TRAILING = ")]'\".,;"

URL_PATTERNS = (
    re.compile(re.escape(AUTH_URL_MARKER) + r"\s*(https?://" + URL_CHARS + ")" + URL_TERMINATOR),
    re.compile(
        r"(?:visit|open|navigate to|go to)\b[^\n]*?(?:\n\s*)?(https?://" + URL_CHARS + ")" + URL_TERMINATOR,
        re.IGNORECASE
    ),
    re.compile(r"(https?://" + URL_CHARS + ")" + URL_TERMINATOR),
)

SUCCESS_PHRASES = (
    "successfully signed in",
    "authentication successful",
    "logged in as",
    "authentication complete",
    "login successful",
    "authenticated successfully",
    "login completed",
    "loaded cached credentials",
    "already authenticated",
    "credentials loaded",
)

FAILURE_PHRASES = (
    "access denied",
    "access_denied",
    "authentication failed",
    "login failed",
    "authorization was denied",
)

FAILED_MARKER_RE = re.compile(re.escape(FAILED_MARKER) + r"([^\n]*)\n")
INFO_MARKER_RE = re.compile(re.escape(INFO_MARKER) + r"([^\n]*)\n")
MARKERS = (AUTH_URL_MARKER, SUCCESS_MARKER, FAILED_MARKER, INFO_MARKER)


def strip_ansi(text: str) -> str:
    """Remove terminal control sequences and normalise line endings."""
    text = ANSI_RE.sub("", text)
    return text.replace("\r\n", "\n").replace("\r", "\n")


def clean_url(url: str) -> str:
    return url.rstrip(URL_TRAILING)


def find_url(text: str, start: int = 0) -> Optional[str]:
    """
    Find an authentication URL in cleaned text.

    Patterns are tried in order (automation marker, explicit "visit/open"
    phrasing, any http(s) URL); the first pattern with a hit wins. A URL
    only counts once it is followed by a terminator so a URL split across
    two output chunks is never reported half-read.

    Args:
        text: Cleaned output
        start: Only report URLs whose terminator is at or after this offset

    Returns:
        Optional[str]: The URL with trailing punctuation removed
    """
    for pattern in URL_PATTERNS:
        for match in pattern.finditer(text):
            if match.end(1) >= start:
                return clean_url(match.group(1))
    return None


def find_phrase(text: str, phrases: Iterable[str], start: int = 0) -> Optional[str]:
    """Case-insensitive search; returns the first listed phrase that ends after start."""
    lowered = text.lower()
    for phrase in phrases:
        if lowered.find(phrase, max(0, start - len(phrase) + 1)) != -1:
            return phrase
    return None


def visible_lines(text: str) -> List[str]:
    """Non-empty output lines, automation markers excluded."""
    lines = []
    for line in text.split("\n"):
        line = line.strip()
        if line and not line.startswith(MARKERS):
            lines.append(line)
    return lines


@dataclass
class ScanResult:
    """What a single chunk of output revealed."""
    text: str
    url: Optional[str] = None
    success: Optional[str] = None
    failure: Optional[str] = None
    info: List[str] = field(default_factory=list)
    prompts: List[str] = field(default_factory=list)


class OutputScanner:
    """
    Incremental scanner for one output stream.

    Matching runs over a sliding window (retained tail + new chunk) so that
    phrases and URLs split across reads are still seen, while each match is
    reported only once, in the chunk that completed it.
    """

    def __init__(
        self,
        success_phrases: Sequence[str] = SUCCESS_PHRASES,
        failure_phrases: Sequence[str] = FAILURE_PHRASES,
        prompts: Sequence[str] = (),
        tail_size: int = 4096
    ):
        self.success_phrases = tuple(p.lower() for p in success_phrases)
        self.failure_phrases = tuple(p.lower() for p in failure_phrases)
        self.prompts = tuple(p.lower() for p in prompts)
        self.tail_size = tail_size
        self._tail = ""

    def feed(self, chunk: str) -> ScanResult:
        text = strip_ansi(chunk)
        window = self._tail + text
        start = len(self._tail)
        self._tail = window[-self.tail_size:]

        result = ScanResult(text=text)
        result.url = find_url(window, start)
        result.prompts = [p for p in self.prompts if find_phrase(window, (p,), start)]

        for match in INFO_MARKER_RE.finditer(window):
            if match.end() > start:
                result.info.append(match.group(1).strip())

        failed = None
        for match in FAILED_MARKER_RE.finditer(window):
            if match.end() > start:
                failed = match.group(1).strip() or "Login failed"
                break

        # Markers take precedence over heuristic phrases
        if failed is not None:
            result.failure = failed
        elif window.find(SUCCESS_MARKER, max(0, start - len(SUCCESS_MARKER) + 1)) != -1:
            result.success = SUCCESS_MARKER
        else:
            result.failure = find_phrase(window, self.failure_phrases, start)
            if result.failure is None:
                result.success = find_phrase(window, self.success_phrases, start)

        return result

    def finish(self) -> ScanResult:
        """Flush the stream end so an unterminated final line is still evaluated."""
        return self.feed("\n")
