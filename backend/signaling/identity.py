"""
Device identifier helpers shared by the relay and the peers.

An identifier is a short alphanumeric token chosen by the client and valid
for one connection session.
"""

import random
import re
import string
import time

from config import DEVICE_ID_LENGTH, DEVICE_ID_MAX_LENGTH, DEVICE_ID_MIN_LENGTH

_DEVICE_ID_RE = re.compile(r"[a-zA-Z0-9]+")
_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def validate_device_id(device_id) -> bool:
    """True for alphanumeric strings of 3-20 characters."""
    if not device_id or not isinstance(device_id, str):
        return False
    if not DEVICE_ID_MIN_LENGTH <= len(device_id) <= DEVICE_ID_MAX_LENGTH:
        return False
    return bool(_DEVICE_ID_RE.fullmatch(device_id))


def generate_device_id(length: int = DEVICE_ID_LENGTH) -> str:
    """
    Random upper-case identifier.

    The low-order digits of the millisecond clock are mixed with random
    characters so two peers started together still differ.
    """
    length = max(DEVICE_ID_MIN_LENGTH, min(length, DEVICE_ID_MAX_LENGTH))
    stamp = _to_base36(int(time.time() * 1000))[-max(1, length // 2):]
    suffix = "".join(random.choice(_BASE36) for _ in range(length - len(stamp)))
    return (stamp + suffix)[:length].upper()


def is_offer_initiator(local_id: str, peer_id: str) -> bool:
    """
    Tie-break deciding who creates the offer: the lexicographically smaller
    identifier. Both peers compute the same answer independently.
    """
    if local_id == peer_id:
        raise ValueError("local and peer identifiers must differ")
    return local_id < peer_id
