from typing import Optional, Pattern
import re

from qsys_bridge.domain.errors import InvalidArgumentError


def compile_pattern(pattern: Optional[str], label: str = "filter") -> Optional[Pattern[str]]:
    """Compile a case-insensitive user regex, rejecting malformed ones"""
    if not pattern:
        return None
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise InvalidArgumentError(f"Invalid {label} pattern {pattern!r}: {e}")
