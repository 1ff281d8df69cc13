"""Text processing helpers."""

from __future__ import annotations

import re

WHITESPACE_RE = re.compile(r"[ \t\r\f\v]+")
BLANK_LINES_RE = re.compile(r"\n{3,}")


def normalize(text: str) -> str:
    """Collapse runs of spaces and blank lines, keeping paragraph breaks."""
    collapsed = WHITESPACE_RE.sub(" ", text)
    collapsed = "\n".join(line.strip() for line in collapsed.split("\n"))
    return BLANK_LINES_RE.sub("\n\n", collapsed).strip()


def estimate_tokens(text: str) -> int:
    """Rough token estimate (four characters per token)."""
    return max(1, (len(text) + 3) // 4) if text else 0
