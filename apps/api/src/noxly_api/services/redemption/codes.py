"""Numeric redemption code generation."""

from __future__ import annotations

import re
import secrets

DEFAULT_CODE_LENGTH = 6


def generate_redemption_code(length: int = DEFAULT_CODE_LENGTH) -> str:
    """Return a uniformly random, zero-padded numeric code of ``length`` digits."""

    if length <= 0:
        raise ValueError("Code length must be positive")
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def is_well_formed_code(code: str | None, length: int = DEFAULT_CODE_LENGTH) -> bool:
    if not code:
        return False
    return re.fullmatch(rf"\d{{{length}}}", code) is not None
