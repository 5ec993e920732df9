"""In-memory query cache with a declared write -> invalidation map.

Keys are tuples such as ``("budgets",)`` or ``("budgets", 3)``.
Invalidating a key drops it and every key it prefixes, so invalidating
``("transactions",)`` also drops ``("transactions", "dateRange", 0, 99)``.
Entries in ``INVALIDATIONS`` may reference write parameters with a leading
colon (``":budget_id"``); :meth:`QueryCache.on_write` substitutes them.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Mapping, Optional

from firefly_lite.logging_setup import get_logger

CacheKey = tuple[Hashable, ...]

INVALIDATIONS: dict[str, tuple[CacheKey, ...]] = {
    "create_account": (("accounts",),),
    "create_category": (("categories",),),
    "create_transaction": (("transactions",), ("accounts",), ("budget_summary",)),
    "create_transactions_from_rows": (("transactions",), ("accounts",), ("budget_summary",)),
    "create_tag": (("tags",),),
    "delete_tag": (("tags",), ("transactions",)),
    "create_budget": (("budgets",), ("budget_summary",)),
    "update_budget": (("budgets",), ("budgets", ":budget_id"), ("budget_summary",)),
    "delete_budget": (("budgets",), ("budget_summary",)),
    "create_report": (("reports",),),
    "update_report": (("reports",), ("reports", ":report_id")),
    "delete_report": (("reports",),),
    "create_bank_connection": (("bank_connections",),),
    "delete_bank_connection": (("bank_connections",),),
    "sync_bank_connection": (("bank_connections",),),
    "update_bank_connection_status": (("bank_connections",),),
    "create_invoice": (("invoices",),),
    "update_invoice": (("invoices",), ("invoices", ":invoice_id")),
    "delete_invoice": (("invoices",),),
    "save_settings": (("settings",),),
}

_MISSING = object()

_logger = get_logger("firefly_lite.query_cache")


@dataclass(frozen=True)
class CachedEntry:
    value: Any
    expires_at: float | None


class QueryCache:
    def __init__(
        self,
        invalidations: Optional[Mapping[str, tuple[CacheKey, ...]]] = None,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._invalidations = dict(INVALIDATIONS if invalidations is None else invalidations)
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[CacheKey, CachedEntry] = {}

    def __contains__(self, key: CacheKey) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: CacheKey, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            return default
        return entry.value

    def set(self, key: CacheKey, value: Any) -> None:
        expires_at = None
        if self._ttl_seconds is not None:
            expires_at = self._clock() + self._ttl_seconds
        self._entries[key] = CachedEntry(value=value, expires_at=expires_at)

    def get_or_fetch(self, key: CacheKey, fetch: Callable[[], Any]) -> Any:
        cached = self.get(key, _MISSING)
        if cached is not _MISSING:
            return cached
        value = fetch()
        self.set(key, value)
        return value

    def invalidate(self, key: CacheKey) -> list[CacheKey]:
        removed = [existing for existing in self._entries if existing[: len(key)] == key]
        for existing in removed:
            del self._entries[existing]
        return removed

    def on_write(self, operation: str, **params: Any) -> list[CacheKey]:
        try:
            targets = self._invalidations[operation]
        except KeyError as exc:
            raise ValueError(f"No invalidation declared for {operation}") from exc

        removed: list[CacheKey] = []
        for target in targets:
            removed.extend(self.invalidate(_bind_key(target, params)))
        _logger.debug("%s invalidated %d cached queries", operation, len(removed))
        return removed

    def clear(self) -> None:
        self._entries.clear()


def _bind_key(template: CacheKey, params: Mapping[str, Any]) -> CacheKey:
    bound: list[Hashable] = []
    for part in template:
        if isinstance(part, str) and part.startswith(":"):
            name = part[1:]
            if name not in params:
                raise ValueError(f"Missing parameter {name} for cache key {template}")
            bound.append(params[name])
        else:
            bound.append(part)
    return tuple(bound)
