"""License key generation."""
from __future__ import annotations

import secrets

# Excludes 0/O/1/I.
KEY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

DEFAULT_KEY_PREFIX = "CSTY"


def _random_chunk(length: int) -> str:
    return "".join(secrets.choice(KEY_ALPHABET) for _ in range(length))


def generate_license_key(
    prefix: str = DEFAULT_KEY_PREFIX,
    groups: int = 3,
    group_length: int = 4,
) -> str:
    """Return a key such as ``CSTY-ABCD-EFGH-JKLM``."""

    if groups < 1 or group_length < 1:
        raise ValueError("groups and group_length must be >= 1")
    parts = [_random_chunk(group_length) for _ in range(groups)]
    return "-".join([prefix, *parts])
