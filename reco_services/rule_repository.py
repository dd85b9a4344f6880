"""
reco_services.rule_repository -- TTL-cached truth table.

Responsibility:
    Hand out a ``RuleEngine`` over the current truth table, reloading the
    table from its source at most once per TTL window.

Architecture position:
    Services -- the rule source is a callable (normally reading the active
    configuration), so the repository owns no I/O of its own.

Invariants enforced:
    - The engine handed out is immutable; a reload swaps it wholesale.
    - A failed reload keeps serving the previous table and is logged.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta

from reco_engines.rules import RuleEngine, TruthRule
from reco_kernel.domain.clock import Clock, SystemClock
from reco_kernel.logging_config import get_logger

logger = get_logger("services.rule_repository")


class RuleRepository:
    """
    Cached access to the truth table.

    Contract:
        ``engine()`` returns a ``RuleEngine``; ``invalidate_cache()`` forces
        the next call to reload.
    """

    def __init__(
        self,
        source: Callable[[], Sequence[TruthRule]],
        *,
        ttl_seconds: int = 120,
        clock: Clock | None = None,
    ):
        self._source = source
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._engine: RuleEngine | None = None
        self._loaded_at: datetime | None = None

    def _is_fresh(self) -> bool:
        return (
            self._engine is not None
            and self._loaded_at is not None
            and self._clock.now() - self._loaded_at < self._ttl
        )

    def engine(self) -> RuleEngine:
        with self._lock:
            if self._is_fresh():
                return self._engine
            try:
                rules = tuple(self._source())
            except Exception:
                if self._engine is None:
                    raise
                logger.warning("rule_reload_failed", exc_info=True)
                return self._engine
            self._engine = RuleEngine(rules)
            self._loaded_at = self._clock.now()
            logger.debug("rules_loaded", extra={"rule_count": len(rules)})
            return self._engine

    def rules(self) -> tuple[TruthRule, ...]:
        return self.engine().rules

    def invalidate_cache(self) -> None:
        with self._lock:
            self._engine = None
            self._loaded_at = None
