"""Request content checks.

Provides:
- Script injection (XSS) detection for query strings
"""

import logging
import re
from urllib.parse import unquote_plus

logger = logging.getLogger(__name__)


class XSSDetector:
    """Flags text that looks like a script injection attempt."""

    XSS_PATTERNS = [
        r"<script",
        r"javascript:",
        r"on\w+\s*=",
        r"<iframe",
        r"data:text/html",
        r"vbscript:",
        r"expression\s*\(",
        r"<object",
        r"<embed",
        r"<link.*href.*javascript:",
    ]

    def __init__(self):
        self._compiled = [re.compile(p, re.IGNORECASE) for p in self.XSS_PATTERNS]

    def find_matches(self, text: str) -> list[str]:
        """Get the patterns matching the text.

        The text is checked both as given and percent-decoded, so encoded
        query strings are caught too.
        """
        if not text:
            return []
        candidates = {text, unquote_plus(text)}
        return [
            pattern.pattern
            for pattern in self._compiled
            if any(pattern.search(candidate) for candidate in candidates)
        ]

    def is_safe(self, text: str) -> bool:
        matches = self.find_matches(text)
        if matches:
            logger.warning(f"Possible XSS attempt matched {matches}")
        return not matches
