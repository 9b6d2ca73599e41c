"""
Agent Discovery Utility Module

Small pure helpers shared by the compiler, prefilters and data sources.

Functions:
    format_agent_id: Build a composite ``chainId:tokenId`` id
    parse_agent_id: Split a composite id
    to_unix_seconds: Normalize heterogeneous time input
    utf8_to_hex: Encode a string the way metadata values are stored
    intersect_ids: AND two optional id lists
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Iterable, List, Optional, Tuple

from .exceptions import ValidationError


def format_agent_id(chain_id: int, token_id) -> str:
    """
    Build a composite agent id.

    Example:
        >>> format_agent_id(8453, 12)
        '8453:12'
    """
    return f"{int(chain_id)}:{token_id}"


def parse_agent_id(agent_id: str) -> Tuple[Optional[int], str]:
    """
    Split a composite agent id into (chain_id, token_id).

    A bare token id returns ``(None, token_id)``.

    Raises:
        ValidationError: Chain prefix is not an integer
    """
    s = str(agent_id).strip()
    if ":" not in s:
        return None, s
    chain_str, token = s.split(":", 1)
    try:
        return int(chain_str), token
    except ValueError as e:
        raise ValidationError(f"Invalid chain prefix in agent id '{agent_id}'") from e


def to_unix_seconds(value) -> int:
    """
    Normalize a time filter value to unix seconds.

    Accepts epoch numbers, numeric strings, ``datetime``/``date`` objects and
    ISO-8601 strings. Values without a timezone are treated as UTC.

    Example:
        >>> to_unix_seconds("2024-01-01")
        1704067200
        >>> to_unix_seconds("2024-01-01T00:00:00+01:00")
        1704063600

    Raises:
        ValidationError: Empty or unparseable input
    """
    if isinstance(value, bool):
        raise ValidationError(f"Invalid time value: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        s = str(value).strip()
        if not s:
            raise ValidationError("Empty date")
        if s.lstrip("-").isdigit():
            return int(s)
        try:
            dt = datetime.fromisoformat(s.replace("Z", "+00:00").replace("z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"Invalid date: {value!r}") from e

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def utf8_to_hex(s: str) -> str:
    return "0x" + s.encode("utf-8").hex()


def dedupe(values: Iterable[str]) -> List[str]:
    """Drop duplicates, keeping first-seen order."""
    return list(dict.fromkeys(values))


def intersect_ids(a: Optional[List[str]], b: Optional[List[str]]) -> Optional[List[str]]:
    """
    AND two optional id lists.

    None means "unconstrained". The result keeps the order of ``a``.
    """
    if a is None and b is None:
        return None
    if a is None:
        return list(b or [])
    if b is None:
        return list(a or [])
    bset = set(b)
    return [x for x in a if x in bset]
