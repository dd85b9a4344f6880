"""
reco_services.view_cache -- Coalescing cache of assembled reconciliation views.

Responsibility:
    Hold assembled view row sets per (country, include_deleted, normalized
    filter), make concurrent misses on one key share a single build, and
    let the save path either patch cached rows or drop entries.

Architecture position:
    Services -- the only cross-request shared mutable state of the view
    path.  One instance is owned by ``ReconciliationService`` and injected,
    never module-global.

Invariants enforced:
    - At most one build in flight per key.  Get-or-create of the in-flight
      future happens under the cache lock; the build itself runs outside.
    - A build that was in flight when its key was invalidated (or when a
      patch ran) still answers its own waiters but is not stored.
    - Entries are tuples of frozen ``ViewRow`` objects and every caller
      gets its own list.  ``patch`` swaps whole rows and publishes a new
      tuple, so a reader sees pre- or post-patch rows, never a torn one.
    - ``patch`` replaces the reconciliation snapshot only.  Grouping flags
      (``is_matched_across_accounts``, ``missing_amount``) keep their
      cached values until the next rebuild.

Failure modes:
    - A failing build propagates to the builder and to every waiter of
      that build; nothing is cached and the next ``get`` retries.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import Future
from dataclasses import dataclass

from reco_engines.filters import normalize_filter_for_cache
from reco_kernel.domain.dtos import Reconciliation, ViewRow
from reco_kernel.logging_config import LogContext, get_logger

logger = get_logger("services.view_cache")


@dataclass(frozen=True)
class ViewCacheKey:
    """``(country, include_deleted, normalized filter)``; string form ``FR|0|<filter>``."""

    country_id: str
    include_deleted: bool = False
    normalized_filter: str = ""

    @classmethod
    def of(cls, country_id: str, filter_text: str | None = None, include_deleted: bool = False) -> ViewCacheKey:
        return cls(
            country_id=country_id.strip().upper(),
            include_deleted=include_deleted,
            normalized_filter=normalize_filter_for_cache(filter_text),
        )

    def __str__(self) -> str:
        return f"{self.country_id}|{int(self.include_deleted)}|{self.normalized_filter}"


class ViewCache:
    """
    Thread-safe view cache with build coalescing.

    Contract:
        ``get(key, build)`` returns a list of rows for ``key``, calling
        ``build()`` at most once across concurrent callers on a miss.
        ``invalidate(country)`` / ``invalidate_prefix(prefix)`` drop
        entries.  ``patch(records)`` refreshes the reconciliation of cached
        rows with matching ids.

    Non-goals:
        No eviction or TTL.  Freshness is driven by saves and explicit
        invalidation.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[ViewCacheKey, tuple[ViewRow, ...]] = {}
        self._inflight: dict[ViewCacheKey, Future[tuple[ViewRow, ...]]] = {}
        self._generations: dict[ViewCacheKey, int] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: ViewCacheKey, build: Callable[[], Sequence[ViewRow]]) -> list[ViewRow]:
        with self._lock:
            rows = self._entries.get(key)
            if rows is not None:
                return list(rows)
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future
                generation = self._generations.get(key, 0)

        if not owner:
            # a waiter that stops waiting does not cancel the shared build
            return list(future.result())

        try:
            with LogContext.bind(country_id=key.country_id, cache_key=str(key)):
                built = tuple(build())
        except Exception as exc:
            with self._lock:
                if self._inflight.get(key) is future:
                    del self._inflight[key]
            future.set_exception(exc)
            raise

        with self._lock:
            if self._generations.get(key, 0) == generation:
                self._entries[key] = built
            else:
                logger.debug("view_build_discarded", extra={"cache_key": str(key)})
            if self._inflight.get(key) is future:
                del self._inflight[key]
        future.set_result(built)
        return list(built)

    def peek(self, key: ViewCacheKey) -> list[ViewRow] | None:
        """Cached rows for ``key`` without building; None on a miss."""
        with self._lock:
            rows = self._entries.get(key)
        return list(rows) if rows is not None else None

    def find_row(self, row_id: str, country_id: str | None = None) -> ViewRow | None:
        """First cached row with ``row_id`` in any entry (optionally of one country)."""
        with self._lock:
            entries = list(self._entries.items())
        for key, rows in entries:
            if country_id and key.country_id != country_id.strip().upper():
                continue
            for row in rows:
                if row.id == row_id:
                    return row
        return None

    def cached_keys(self) -> list[ViewCacheKey]:
        with self._lock:
            return list(self._entries)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _drop_locked(self, keys: Iterable[ViewCacheKey]) -> int:
        dropped = 0
        for key in list(keys):
            self._generations[key] = self._generations.get(key, 0) + 1
            if self._entries.pop(key, None) is not None:
                dropped += 1
            self._inflight.pop(key, None)
        return dropped

    def invalidate(self, country_id: str | None = None) -> int:
        """Drop every entry, or every entry of one country; returns entries dropped."""
        country = country_id.strip().upper() if country_id else None
        with self._lock:
            keys = set(self._entries) | set(self._inflight)
            if country is not None:
                keys = {k for k in keys if k.country_id == country}
            dropped = self._drop_locked(keys)
        logger.info("cache_invalidated", extra={"country_id": country, "entries": dropped})
        return dropped

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop entries whose string key starts with ``prefix`` (e.g. ``"FR|1|"``)."""
        with self._lock:
            keys = {k for k in set(self._entries) | set(self._inflight) if str(k).startswith(prefix)}
            dropped = self._drop_locked(keys)
        logger.info("cache_invalidated", extra={"prefix": prefix, "entries": dropped})
        return dropped

    def patch(self, records: Iterable[Reconciliation]) -> int:
        """
        Swap in fresh reconciliation snapshots for cached rows; returns rows patched.

        Builds in flight are marked stale: they may have read the rows
        before the save.
        """
        by_id = {r.id: r.copy() for r in records}
        if not by_id:
            return 0
        patched = 0
        with self._lock:
            for key, rows in list(self._entries.items()):
                if not any(row.id in by_id for row in rows):
                    continue
                new_rows = tuple(
                    row.with_reconciliation(by_id[row.id]) if row.id in by_id else row
                    for row in rows
                )
                patched += sum(1 for row in rows if row.id in by_id)
                self._entries[key] = new_rows
            for key in self._inflight:
                self._generations[key] = self._generations.get(key, 0) + 1
        logger.debug("cache_patched", extra={"records": len(by_id), "rows": patched})
        return patched
