"""Sortable identifiers for runs and events, shaped ``<prefix>-<ULID>``."""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from typing import Final

RUN_PREFIX: Final[str] = "run"
EVENT_PREFIX: Final[str] = "evt"

# Crockford base32: no I, L, O or U.
_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_ULID_CHARS: Final[int] = 26
_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_PREFIXED: Final[re.Pattern[str]] = re.compile(
    r"(?P<prefix>[a-z][a-z0-9]*)-(?P<ulid>[0-9A-HJKMNP-TV-Z]{26})"
)

Entropy = Callable[[int], bytes]


def new_ulid(*, timestamp_ms: int | None = None, entropy: Entropy | None = None) -> str:
    """48-bit millisecond timestamp followed by 80 random bits, base32 encoded.

    Identifiers minted in later milliseconds sort after earlier ones.
    """

    millis = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if isinstance(millis, bool) or not isinstance(millis, int) or not 0 <= millis <= _MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms must be an int in 0..{_MAX_TIMESTAMP_MS}")
    noise = (entropy or secrets.token_bytes)(10)
    if len(noise) != 10:
        raise ValueError("entropy source must return exactly 10 bytes")

    value = (millis << 80) | int.from_bytes(noise, "big")
    chars = []
    for _ in range(_ULID_CHARS):
        value, digit = divmod(value, 32)
        chars.append(_ALPHABET[digit])
    return "".join(reversed(chars))


def new_id(prefix: str, **ulid_options: object) -> str:
    candidate = f"{prefix}-{new_ulid(**ulid_options)}"  # type: ignore[arg-type]
    check_id(candidate, prefix)
    return candidate


def check_id(value: object, prefix: str) -> str:
    """Return ``value`` when it is a well-formed id carrying ``prefix``; raise ``ValueError`` otherwise."""

    if not isinstance(value, str):
        raise ValueError(f"id must be a string, got {type(value).__name__}")
    match = _PREFIXED.fullmatch(value)
    if match is None:
        raise ValueError(f"malformed id {value!r}; expected '<prefix>-<ULID>'")
    if match["prefix"] != prefix:
        raise ValueError(f"id {value!r} does not carry prefix {prefix!r}")
    return value


def generate_run_id(**ulid_options: object) -> str:
    return new_id(RUN_PREFIX, **ulid_options)


def generate_event_id(**ulid_options: object) -> str:
    return new_id(EVENT_PREFIX, **ulid_options)


def validate_run_id(value: object) -> str:
    return check_id(value, RUN_PREFIX)


def validate_event_id(value: object) -> str:
    return check_id(value, EVENT_PREFIX)


__all__ = [
    "EVENT_PREFIX",
    "RUN_PREFIX",
    "check_id",
    "generate_event_id",
    "generate_run_id",
    "new_id",
    "new_ulid",
    "validate_event_id",
    "validate_run_id",
]
