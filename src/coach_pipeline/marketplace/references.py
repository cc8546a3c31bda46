"""Human-readable reference numbers and unguessable access tokens."""

from __future__ import annotations

import secrets
from enum import Enum


class ReferencePrefix(str, Enum):
    ENQUIRY = "ENQ"
    QUOTE = "QTE"
    BOOKING = "BKG"


def format_reference(prefix: ReferencePrefix, year: int, sequence: int) -> str:
    """`ENQ-2026-00042` style reference."""

    return f"{prefix.value}-{year}-{sequence:05d}"


def new_access_token() -> str:
    return secrets.token_urlsafe(32)
