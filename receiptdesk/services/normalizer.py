"""Canonical forms of contact names and phone numbers used for matching."""
from __future__ import annotations

import re
from typing import Optional

# Compound forms go first so "gmbh & co. kg" is removed as one unit.
_COMPOUND_SUFFIXES = re.compile(r"\b(gmbh & co\. kg|gmbh & co kg|ag & co\. kg|ag & co kg)\b")
_SIMPLE_SUFFIXES = re.compile(r"\b(gmbh|ag|ug|kg|ohg|eg|mbh)\b")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_WHITESPACE = re.compile(r"\s+")
_PHONE_JUNK = re.compile(r"[^0-9+]")


def normalize_name(name: Optional[str]) -> str:
    """Lower-case, drop legal-entity suffixes and punctuation.

    >>> normalize_name("ACME GmbH & Co. KG")
    'acme'
    """
    if not name:
        return ""
    normalized = name.lower()
    normalized = _COMPOUND_SUFFIXES.sub("", normalized)
    normalized = _SIMPLE_SUFFIXES.sub("", normalized)
    normalized = _NON_ALNUM.sub(" ", normalized)
    return _WHITESPACE.sub(" ", normalized).strip()


def normalize_phone(phone: Optional[str]) -> str:
    """Keep digits and a leading ``+`` only."""
    if not phone:
        return ""
    stripped = _PHONE_JUNK.sub("", phone.strip())
    if not stripped:
        return ""
    # "+" is only meaningful as the international prefix
    head, tail = stripped[0], stripped[1:].replace("+", "")
    return head + tail
