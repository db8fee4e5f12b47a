"""
Generation and validation of client-side container identifiers.
"""
import re
import uuid

_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def generate_container_id() -> str:
    """
    Returns a fresh container id: a random UUID4 (122 random bits) rendered as
    32 lowercase hex characters, which is also a valid engine container name.
    """
    return uuid.uuid4().hex


def is_container_id(value: str) -> bool:
    """
    Checks whether a string has the shape of an id produced by generate_container_id.
    """
    return bool(_ID_PATTERN.match(value or ""))
