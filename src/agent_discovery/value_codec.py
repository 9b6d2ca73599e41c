"""
Fixed-point codec for reputation values.

The reputation registry stores a feedback value as a signed integer plus a
decimal-places count. ``encode_reputation_value`` turns a user-facing decimal
into that pair and ``decode_reputation_value`` turns it back into a float for
averaging and display.

Rules:
    - plain (``"-12.50"``) and exponential (``"1.5e-3"``) notation are accepted
    - NaN and Infinity, textual or numeric, raise ``InvalidValueError``
    - at most 18 fractional digits are kept, rounded half-up on the 19th
    - the raw magnitude saturates at ``MAX_RAW_ABS`` and never raises

Example:
    >>> encode_reputation_value("1.0000000000000000005")
    EncodedValue(value=1000000000000000001, decimals=18, normalized='1.0000000000000000005')
    >>> encode_reputation_value("1e40").value == 10 ** 38
    True
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Union

from .exceptions import InvalidValueError

MAX_VALUE_DECIMALS = 18
MAX_RAW_ABS = 10 ** 38
"""Matches the registry contract's MAX_ABS_VALUE."""

_PLAIN_RE = re.compile(r"^([+-])?(\d+)(?:\.(\d+))?$")
_EXP_RE = re.compile(r"^([+-]?)(\d+(?:\.\d+)?)[eE]([+-]?\d+)$")

NumberLike = Union[str, int, float, Decimal]


@dataclass(frozen=True)
class EncodedValue:
    value: int
    decimals: int
    normalized: str


def _canonical(negative: bool, body: str) -> str:
    int_part, _, frac_part = body.partition(".")
    int_part = int_part.lstrip("0") or "0"
    frac_part = frac_part.rstrip("0")
    if int_part == "0" and not frac_part:
        return "0"
    sign = "-" if negative else ""
    return f"{sign}{int_part}.{frac_part}" if frac_part else f"{sign}{int_part}"


def normalize_decimal_string(text: str) -> str:
    """
    Normalize a decimal string to plain notation without redundant zeros.

    Args:
        text: Decimal string, plain or exponential

    Returns:
        Normalized string such as ``"-0.00015"`` or ``"0"``

    Raises:
        InvalidValueError: Empty, NaN, Infinity or unparseable input
    """
    s = text.strip()
    if not s:
        raise InvalidValueError(text, "Empty value")

    bare = s.lower().lstrip("+-")
    if bare == "nan":
        raise InvalidValueError(text, "NaN not supported")
    if bare in ("inf", "infinity"):
        raise InvalidValueError(text, "Infinity not supported")

    match = _EXP_RE.match(s)
    if match:
        negative = match.group(1) == "-"
        int_part, _, frac_part = match.group(2).partition(".")
        digits = (int_part + frac_part).lstrip("0")
        if not digits:
            return "0"
        # mantissa is digits * 10^-len(frac); the exponent moves the point
        shift = int(match.group(3)) - len(frac_part)
        if shift >= 0:
            return _canonical(negative, digits + "0" * shift)
        pos = len(digits) + shift
        if pos > 0:
            return _canonical(negative, f"{digits[:pos]}.{digits[pos:]}")
        return _canonical(negative, "0." + "0" * (-pos) + digits)

    match = _PLAIN_RE.match(s)
    if not match:
        raise InvalidValueError(text, f"Invalid numeric string: {text}")
    return _canonical(match.group(1) == "-", s.lstrip("+-"))


def encode_reputation_value(value: NumberLike) -> EncodedValue:
    """
    Encode a decimal into (raw value, decimals, normalized string).

    Args:
        value: Decimal string, int, float or Decimal

    Returns:
        EncodedValue with ``decimals`` in 0..18

    Raises:
        InvalidValueError: NaN, Infinity, unsupported type or unparseable string
    """
    if isinstance(value, bool):
        raise InvalidValueError(value, "Booleans are not numeric values")
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidValueError(value, "Non-finite number not supported")
        text = repr(value)
    elif isinstance(value, (int, Decimal)):
        text = str(value)
    elif isinstance(value, str):
        text = value
    else:
        raise InvalidValueError(value, f"Unsupported value type: {type(value).__name__}")

    normalized = normalize_decimal_string(text)
    if normalized == "0":
        return EncodedValue(value=0, decimals=0, normalized="0")

    negative = normalized.startswith("-")
    int_part, _, frac_part = normalized.lstrip("-").partition(".")
    decimals = min(len(frac_part), MAX_VALUE_DECIMALS)

    raw = int(int_part + frac_part[:decimals])
    if len(frac_part) > decimals and int(frac_part[decimals]) >= 5:
        raw += 1
    if negative:
        raw = -raw

    raw = max(-MAX_RAW_ABS, min(MAX_RAW_ABS, raw))
    return EncodedValue(value=raw, decimals=decimals, normalized=normalized)


def decode_reputation_value(raw: int, decimals: int) -> float:
    """
    Decode (raw, decimals) into a float.

    Lossy: magnitudes near ``MAX_RAW_ABS`` exceed float precision.
    """
    return int(raw) / (10 ** int(decimals))
