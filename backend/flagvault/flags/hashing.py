"""Rollout bucketing.

The bucket of a key is a pure function of the key. Nothing about the
targeting config feeds into it, which is what keeps rollouts sticky:
raising the percentage only ever adds keys, lowering it only removes them.
"""

_MASK_32 = 0xFFFFFFFF
BUCKET_COUNT = 100


def rolling_hash(key: str) -> int:
    # 31-multiplier rolling hash over UTF-16 code units, kept to 32 bits,
    # so buckets match the ones already assigned by the browser editor.
    value = 0
    encoded = key.encode("utf-16-le")
    for index in range(0, len(encoded), 2):
        code_unit = encoded[index] | (encoded[index + 1] << 8)
        value = (value * 31 + code_unit) & _MASK_32
    return value


def bucket(key: str) -> int:
    return rolling_hash(key) % BUCKET_COUNT


def in_rollout(key: str, percentage: int) -> bool:
    return bucket(key) < percentage
