from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, Optional, Tuple

from repairdesk.logging import get_logger

logger = get_logger(__name__)

QueryKey = Tuple[Hashable, ...]


class QueryCache:
    """Client-side cache keyed by logical resource path.

    Keys are tuples whose first element is the resource path, e.g.
    ``("/api/settings/currencies",)``. Invalidating a path drops every key
    that starts with it. Entries are not keyed by tenant, which is why a
    tenant switch has to invalidate explicitly.
    """

    def __init__(self) -> None:
        self._entries: Dict[QueryKey, Any] = {}
        # Bumped on invalidation so in-flight loads can tell they went stale
        self._epochs: Dict[Hashable, int] = {}

    @staticmethod
    def _normalize(key: QueryKey | str) -> QueryKey:
        return (key,) if isinstance(key, str) else tuple(key)

    def get(self, key: QueryKey | str) -> Optional[Any]:
        return self._entries.get(self._normalize(key))

    def contains(self, key: QueryKey | str) -> bool:
        return self._normalize(key) in self._entries

    def set(self, key: QueryKey | str, value: Any) -> None:
        self._entries[self._normalize(key)] = value

    def epoch(self, path: Hashable) -> int:
        return self._epochs.get(path, 0)

    def invalidate(self, path: Hashable) -> int:
        """Drop every entry for ``path`` and void in-flight loads for it."""

        self._epochs[path] = self.epoch(path) + 1
        stale = [key for key in self._entries if key[0] == path]
        for key in stale:
            self._entries.pop(key, None)
        return len(stale)

    def invalidate_many(self, paths: Iterable[Hashable]) -> int:
        return sum(self.invalidate(path) for path in paths)

    def clear(self) -> None:
        for path in {key[0] for key in self._entries} | set(self._epochs):
            self._epochs[path] = self.epoch(path) + 1
        self._entries.clear()

    def keys(self) -> list[QueryKey]:
        return list(self._entries)

    async def fetch(
        self,
        key: QueryKey | str,
        loader: Callable[[], Awaitable[Any]],
        *,
        store_if: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """Return the cached value or load it.

        A value loaded across an invalidation of its path is returned to the
        caller but not stored, as is one rejected by ``store_if``.
        """

        normalized = self._normalize(key)
        if normalized in self._entries:
            return self._entries[normalized]
        started_epoch = self.epoch(normalized[0])
        value = await loader()
        if self.epoch(normalized[0]) != started_epoch:
            logger.debug("query_cache_result_discarded", path=str(normalized[0]))
            return value
        if store_if is not None and not store_if(value):
            return value
        self._entries[normalized] = value
        return value
