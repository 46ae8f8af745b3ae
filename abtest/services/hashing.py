"""Stable string hashing for bucketing and audience sampling."""

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193
BUCKETS = 10000  # 0.01 percentage point resolution


def stable_hash(key: str) -> float:
    """
    Map a string to a float in [0, 100).

    32-bit FNV-1a over the UTF-8 bytes of the key, reduced to one of
    10,000 buckets. Pure and process-independent (unlike ``hash()``,
    which is salted per interpreter), so the same key always lands in
    the same bucket.

    Example:
        >>> stable_hash("exp_1:user_123") == stable_hash("exp_1:user_123")
        True
    """
    h = FNV_OFFSET_BASIS
    for byte in key.encode("utf-8"):
        h ^= byte
        h = (h * FNV_PRIME) & 0xFFFFFFFF
    return (h % BUCKETS) / 100


def bucket_key(experiment_id: str, user_id: str) -> str:
    """Key used to pick a user's variant."""
    return f"{experiment_id}:{user_id}"


def audience_key(experiment_id: str, user_id: str) -> str:
    """Key used for the audience percentage gate, kept apart from the bucket key."""
    return f"{experiment_id}:{user_id}:audience"
