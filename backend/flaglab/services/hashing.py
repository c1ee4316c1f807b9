"""Consistent hashing of subjects into percentage buckets."""


def hash_string(value: str) -> int:
    """
    32-bit polynomial string hash (multiplier 31) over UTF-16 code units.

    Wraps to a signed 32-bit integer at each step, so the same input yields
    the same hash on every process and platform.

    Args:
        value: Input string

    Returns:
        Non-negative integer (absolute value of the signed 32-bit hash)
    """
    h = 0
    encoded = value.encode("utf-16-be")
    for i in range(0, len(encoded), 2):
        code_unit = (encoded[i] << 8) | encoded[i + 1]
        h = (h * 31 + code_unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def bucket(subject_key: str) -> int:
    """
    Map a salted subject key to a bucket in [0, 100).

    Callers salt the subject with the flag key or experiment id so a subject
    gets independent buckets across flags and experiments.

    Example:
        >>> bucket("user_123" + "dark-mode") == bucket("user_123" + "dark-mode")
        True
    """
    return hash_string(subject_key) % 100
