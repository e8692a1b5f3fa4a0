"""Random resource names for per-scenario isolation"""
import random
import string

_ALPHABET = string.ascii_lowercase + string.digits


def random_string(length: int = 6) -> str:
    return ''.join(random.choice(_ALPHABET) for _ in range(length))


def random_name(prefix: str) -> str:
    """ft-<prefix>-xxxxxx, a valid DNS-1123 label for short prefixes"""
    return f"ft-{prefix}-{random_string(6)}"
