"""
Entity ID generation and parsing.

IDs have the form `{type}-{suffix}` where `type` is the two-letter
discriminator and `suffix` is drawn uniformly from lowercase base36 using
the `secrets` module. With the default ten characters the space is 36**10,
so collisions between independent writers are rare; the store still
rejects them with an exclusive create and the caller retries.
"""

import re
import secrets

ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
DEFAULT_LENGTH = 10

_ID_PATTERN = re.compile(r"^([a-z]{2})-([0-9a-z]{4,32})$")


def generate_id(type_code: str, length: int = DEFAULT_LENGTH) -> str:
    """
    Generate a new random ID for an entity of type `type_code`.

    Example:
        >>> generate_id("wi")  # doctest: +SKIP
        'wi-3k9x0pq2zt'
    """
    suffix = "".join(secrets.choice(ALPHABET) for _ in range(length))
    return f"{type_code}-{suffix}"


def is_valid_id(value: str) -> bool:
    """Check whether `value` is a well-formed entity ID."""
    return _ID_PATTERN.match(value) is not None


def type_code_of(entity_id: str) -> str:
    """
    Extract the type discriminator from an ID.

    Raises:
        ValueError: If the ID is malformed
    """
    match = _ID_PATTERN.match(entity_id)
    if match is None:
        raise ValueError(f"Invalid entity ID: {entity_id!r}")
    return match.group(1)
