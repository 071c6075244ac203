from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable, Optional, Pattern


@lru_cache(maxsize=512)
def _compile_pattern(pattern: str) -> Pattern[str]:
    # Only `*` is special; every other character (including `.`) is literal.
    body = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile(f"^{body}$", re.IGNORECASE | re.DOTALL)


def match_pattern(tool_name: str, pattern: str) -> bool:
    return _compile_pattern(pattern).match(tool_name) is not None


def matches(tool_name: str, patterns: Optional[Iterable[str]]) -> bool:
    """Case-insensitive glob match of a tool name against any of the patterns.

    No patterns (None or empty) never matches.
    """
    if not patterns:
        return False
    return any(match_pattern(tool_name, pattern) for pattern in patterns)
