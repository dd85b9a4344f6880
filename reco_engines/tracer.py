"""
reco_engines.tracer -- RECO_ENGINE_TRACE records for pure engine calls.

Responsibility:
    ``@traced_engine`` wraps an engine entry point (grouping, rule
    evaluation) and emits one DEBUG record per call with the engine name
    and version, a fingerprint of the call arguments, the duration and an
    engine-specific summary of the result.

Architecture position:
    Engines -- infrastructure support for the pure calculation layer.
    Emits a log record only; uses a logger under ``reco_kernel`` so the
    kernel's JSON handler picks it up without the engines importing it.

Invariants enforced:
    - The wrapped call's result and exceptions pass through untouched.
    - Nothing is fingerprinted or summarized unless DEBUG is enabled on
      the tracer logger.  Grouping runs over whole country views, so
      hashing its input on every call is not free.
    - Same arguments, same fingerprint: dataclasses, mappings and sets
      are canonicalized field by field in a stable order.

Usage:
    from reco_engines.tracer import traced_engine

    @traced_engine("grouping", "1.0", summarize=lambda out: {"rows": len(out)})
    def group(self, items):
        ...
"""

from __future__ import annotations

import dataclasses
import functools
import hashlib
import logging
import time
from collections.abc import Callable, Mapping
from decimal import Decimal
from enum import Enum
from typing import Any

_logger = logging.getLogger("reco_kernel.engines.tracer")

TRACE_TYPE = "RECO_ENGINE_TRACE"


def _canonicalize(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, Decimal):
        # 100 and 100.00 are the same amount
        return format(value.normalize(), "f")
    if isinstance(value, (str, bool, int, float)):
        return str(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return type(value).__name__ + _canonicalize(
            {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
        )
    if isinstance(value, Mapping):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "{" + ",".join(f"{k}:{_canonicalize(v)}" for k, v in items) + "}"
    if isinstance(value, (set, frozenset)):
        return "{" + ",".join(sorted(_canonicalize(v) for v in value)) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_canonicalize(v) for v in value) + "]"
    return str(value)


def compute_input_fingerprint(args: tuple[Any, ...], kwargs: Mapping[str, Any]) -> str:
    """First 16 hex chars of the SHA-256 of the canonical call arguments."""
    canonical = _canonicalize(list(args)) + "|" + _canonicalize(dict(kwargs))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    *,
    summarize: Callable[[Any], Mapping[str, Any]] | None = None,
) -> Callable:
    """
    Decorate an engine method; ``self`` is excluded from the fingerprint.

    ``summarize(result)`` adds engine-specific fields (row counts, the
    winning rule id) to the trace record.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
            if not _logger.isEnabledFor(logging.DEBUG):
                return func(self, *args, **kwargs)

            fingerprint = compute_input_fingerprint(args, kwargs)
            started = time.perf_counter()
            result = func(self, *args, **kwargs)
            extra: dict[str, Any] = {
                "trace_type": TRACE_TYPE,
                "engine_name": engine_name,
                "engine_version": engine_version,
                "input_fingerprint": fingerprint,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "function": func.__qualname__,
            }
            if summarize is not None:
                extra.update(summarize(result))
            _logger.debug(TRACE_TYPE, extra=extra)
            return result

        return wrapper

    return decorator
