"""
Centralized generation of public channel codes and master keys.

Codes are drawn from an alphabet without look-alike characters
(no I, O, 0, 1) so they survive being read aloud or retyped.
"""

from __future__ import annotations

import secrets

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CHANNEL_CODE_LENGTH = 6
MASTER_KEY_LENGTH = 16


def generate_code(length: int = CHANNEL_CODE_LENGTH) -> str:
    """Random code of ``length`` characters from CODE_ALPHABET."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def generate_channel_code() -> str:
    return generate_code(CHANNEL_CODE_LENGTH)


def generate_master_key() -> str:
    return generate_code(MASTER_KEY_LENGTH)
