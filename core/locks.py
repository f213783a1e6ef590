import threading
import zlib


class ShardedLockTable:
    """
    Fixed-size table of re-entrant locks keyed by hashing an id onto a shard.
    Two ids may share a shard; that only serializes them, it never breaks
    exclusion for a single id.
    """

    def __init__(self, shards: int = 64):
        if shards < 1:
            raise ValueError("shards must be at least 1")
        self._locks = [threading.RLock() for _ in range(shards)]

    def __len__(self):
        return len(self._locks)

    def shard_for(self, key) -> int:
        if isinstance(key, int):
            return key % len(self._locks)
        return zlib.crc32(str(key).encode("utf-8")) % len(self._locks)

    def lock_for(self, key) -> threading.RLock:
        return self._locks[self.shard_for(key)]
