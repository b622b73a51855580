"""Subscriber display-name validation.

A name is accepted when it is not blank, is at most 256 user-perceived
characters (extended grapheme clusters) long, and contains none of the
characters that commonly show up in markup or injection attempts.
"""
from __future__ import annotations

import regex

MAX_NAME_GRAPHEMES = 256
FORBIDDEN_CHARACTERS = frozenset('/()"\'<>\\{}[]')

_GRAPHEME_CLUSTER = regex.compile(r"\X")


class InvalidSubscriberName(ValueError):
    """Raised when a display name fails validation."""


def grapheme_length(value: str) -> int:
    """Number of extended grapheme clusters in *value*."""
    return len(_GRAPHEME_CLUSTER.findall(value))


def parse_subscriber_name(value: str) -> str:
    """Return *value* unchanged if it is a valid display name."""
    is_blank = not value.strip()
    is_too_long = grapheme_length(value) > MAX_NAME_GRAPHEMES
    has_forbidden = any(char in FORBIDDEN_CHARACTERS for char in value)

    if is_blank or is_too_long or has_forbidden:
        raise InvalidSubscriberName(f"{value!r} is not a valid subscriber name")
    return value
