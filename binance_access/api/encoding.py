"""
Canonical parameter encoding.

The canonical form is the exact string that gets signed and sent:
key=value pairs sorted by key byte order, percent-encoded per RFC 3986
and joined by '&'. The server verifies the signature against the string
it receives, so nothing may reorder or re-encode it after signing.
"""

from decimal import Decimal
from enum import Enum
from typing import Any, List, Mapping, Optional, Tuple
from urllib.parse import quote

from .errors import ParameterError


class ArrayStyle(Enum):
    """How a list-valued parameter is written on the wire."""
    BRACKETS = "brackets"  # key[]=v1&key[]=v2
    COMMA = "comma"        # key=v1,v2


def encode_value(value: Any) -> str:
    """
    Convert a scalar parameter value to its wire string.

    Booleans become "true"/"false", enums use their value, floats and
    Decimals are written in plain (non-scientific) notation.
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return encode_value(value.value)
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, float):
        return format(Decimal(repr(value)), "f")
    if isinstance(value, (int, str)):
        return str(value)
    raise ParameterError(f"Unsupported parameter type {type(value).__name__}")


def _pairs(
    params: Mapping[str, Any],
    array_styles: Mapping[str, ArrayStyle],
) -> List[Tuple[str, str]]:
    pairs = []
    for key in sorted(params, key=lambda k: k.encode("utf-8")):
        value = params[key]
        if value is None:
            continue

        if isinstance(value, (list, tuple)):
            style = array_styles.get(key)
            if style is None:
                raise ParameterError(
                    f"Parameter {key!r} is a list but its endpoint declares no array style"
                )
            if style is ArrayStyle.BRACKETS:
                pairs.extend((f"{key}[]", encode_value(item)) for item in value)
            else:
                pairs.append((key, ",".join(encode_value(item) for item in value)))
            continue

        pairs.append((key, encode_value(value)))
    return pairs


def canonical_encode(
    params: Mapping[str, Any],
    array_styles: Optional[Mapping[str, ArrayStyle]] = None,
) -> str:
    """
    Encode parameters into the canonical query string.

    None values are omitted. List values require a declared ArrayStyle
    for that key; repeated entries keep the caller's order.

    Args:
        params: Parameter mapping (insertion order irrelevant)
        array_styles: Array convention per parameter name

    Returns:
        Canonical query string (no leading '?')
    """
    return "&".join(
        f"{quote(key, safe='')}={quote(value, safe='')}"
        for key, value in _pairs(params, array_styles or {})
    )
