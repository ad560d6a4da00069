import time
from collections import OrderedDict
from typing import Any, Optional, Tuple

CacheKey = Tuple[str, str, int, int]


class ProbeCache:
    """
    TTL cache for probe results keyed by (host, path, size, mtime).
    A file replaced in place changes size or mtime, so its old entry is never hit.
    """

    def __init__(self, max_age_seconds: int = 900, max_entries: int = 1024) -> None:
        self.max_age = max_age_seconds
        self.max_entries = max(1, max_entries)
        self._data: "OrderedDict[CacheKey, Tuple[float, Any]]" = OrderedDict()

    @staticmethod
    def key(host_id: str, path: str, size: int, mtime: int) -> CacheKey:
        return (str(host_id), path, int(size), int(mtime))

    def get(self, key: CacheKey) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        ts, value = entry
        if (time.time() - ts) > self.max_age:
            self._data.pop(key, None)
            return None
        self._data.move_to_end(key)
        return value

    def set(self, key: CacheKey, value: Any) -> None:
        self._data[key] = (time.time(), value)
        self._data.move_to_end(key)
        while len(self._data) > self.max_entries:
            self._data.popitem(last=False)

    def invalidate(self, host_id: str, path: str) -> None:
        for key in [k for k in self._data if k[0] == str(host_id) and k[1] == path]:
            self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)
