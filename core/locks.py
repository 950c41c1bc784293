"""
Fixed-size lock striping.

Per-user locks are taken from a fixed pool indexed by a hash of the key,
so the number of lock objects never grows with the number of users.
Two keys may share a stripe; that only serializes them, it never lets
two holders of the same key run together.
"""
import threading
import zlib

DEFAULT_STRIPES = 64


class StripedLock:
    def __init__(self, stripes: int = DEFAULT_STRIPES, factory=threading.Lock):
        if stripes < 1:
            raise ValueError("stripes must be at least 1")
        self._locks = tuple(factory() for _ in range(stripes))

    def __len__(self) -> int:
        return len(self._locks)

    def __call__(self, key: str):
        """Lock guarding ``key``."""
        return self._locks[zlib.crc32(key.encode("utf-8")) % len(self._locks)]
