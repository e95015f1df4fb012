# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

"""
Small string helpers shared by the deck normalizer. SPICE decks are
whitespace- and case-insensitive, so most comparisons here ignore case.
"""

import re
from public import public

QUOTE_CHARS = ('"', "'")

_token_re = re.compile(r'"[^"]*"|\'[^\']*\'|\S+')

@public
def starts_with_ci(text: str, prefix: str) -> bool:
    """Case-insensitive str.startswith."""
    return text[:len(prefix)].lower() == prefix.lower()

@public
def contains_ci(text: str, needle: str) -> bool:
    return needle.lower() in text.lower()

@public
def first_token(text: str) -> str:
    """Returns the first whitespace-separated token in lowercase, or ''."""
    parts = text.split(None, 1)
    return parts[0].lower() if parts else ''

@public
def split_tokens(text: str) -> list[str]:
    """
    Splits text at whitespace, keeping quoted substrings (including their
    quotes) together as one token.
    """
    return _token_re.findall(text)

@public
def quote_char(value: str) -> str | None:
    """Returns the quote character enclosing value, or None."""
    if len(value) >= 2 and value[0] in QUOTE_CHARS and value[-1] == value[0]:
        return value[0]
    return None

@public
def unquote(value: str) -> str:
    if quote_char(value):
        return value[1:-1]
    return value

@public
def requote(value: str, quote: str | None) -> str:
    """Wraps value in quote if quote is not None."""
    if quote:
        return f"{quote}{value}{quote}"
    return value

@public
def replace_tokens(text: str, replacements: dict[str, str]) -> str:
    """Replaces every occurrence of each key in text by its value."""
    for needle, replacement in replacements.items():
        if needle:
            text = text.replace(needle, replacement)
    return text
