import time
from typing import Any, Optional, Protocol


class KeyValueStore(Protocol):
    """Storage for transient auth state (pending nonces, live sessions).

    Any backend shared between instances can implement this; values are
    plain JSON-compatible objects.
    """

    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    def __init__(self) -> None:
        self._data: dict[str, tuple[Any, Optional[float]]] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


_default_store = MemoryKeyValueStore()


def get_kv_store() -> KeyValueStore:
    return _default_store
