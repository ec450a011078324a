"""Attack classification heuristics for logged input.

The default classifier is a plain substring check. It catches the obvious
payloads only and is not a security control on its own.
"""

from __future__ import annotations

import re
from typing import Iterable, Protocol

MAX_LOGGED_CONTENT = 200

_SCRIPT_TAG = re.compile(r"<script", re.IGNORECASE)
_JS_SCHEME = re.compile(r"javascript:", re.IGNORECASE)


class AttackClassifier(Protocol):
    def classify(self, content: str) -> dict[str, bool]: ...


class SubstringClassifier:
    """Flags content containing any of the configured markers."""

    def __init__(
        self,
        xss_markers: Iterable[str] = ("<script", "javascript:"),
        sqli_markers: Iterable[str] = ("UNION", "DROP TABLE"),
    ) -> None:
        self._xss = tuple(xss_markers)
        self._sqli = tuple(sqli_markers)

    def classify(self, content: str) -> dict[str, bool]:
        return {
            "possible_xss": any(marker in content for marker in self._xss),
            "possible_sqli": any(marker in content for marker in self._sqli),
        }


def sanitize_for_log(content: str, limit: int = MAX_LOGGED_CONTENT) -> str:
    """Defang script markers and cap length before content reaches a log."""

    defanged = _SCRIPT_TAG.sub("&lt;script", content)
    defanged = _JS_SCHEME.sub("javascript-blocked:", defanged)
    return defanged[:limit]
