"""Correlation fields attached to every JSON log line.

The crank loop scopes ``run_id``/``iteration_id``, ingestion scopes the transaction
``signature`` and both scope the deal or offer ``address`` they are working on.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from types import MappingProxyType

CONTEXT_FIELDS = ("run_id", "iteration_id", "signature", "address")

_EMPTY: Mapping[str, str] = MappingProxyType({})
_current: ContextVar[Mapping[str, str]] = ContextVar("otcsync_log_context", default=_EMPTY)


def get_logging_context() -> dict[str, str]:
    return dict(_current.get())


@contextmanager
def with_logging_context(**fields: str | None) -> Iterator[None]:
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise ValueError(f"unsupported logging context fields: {sorted(unknown)}")
    merged = dict(_current.get())
    merged.update({key: value for key, value in fields.items() if value is not None})
    token = _current.set(MappingProxyType(merged))
    try:
        yield
    finally:
        _current.reset(token)


@contextmanager
def with_iteration_context(iteration_id: str, run_id: str | None = None) -> Iterator[None]:
    with with_logging_context(run_id=run_id, iteration_id=iteration_id):
        yield
