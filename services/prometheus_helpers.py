"""Prometheus collector factories that survive duplicate registration (reloads, tests)."""

from __future__ import annotations

from typing import Optional, Sequence

from prometheus_client import REGISTRY, Counter, Gauge

from core.logging import get_logger

logger = get_logger(__name__)


def _lookup_collector(name: str):
    existing = getattr(REGISTRY, "_names_to_collectors", None)
    if isinstance(existing, dict):
        return existing.get(name) or existing.get(f"{name}_total")
    return None


def build_counter(name: str, documentation: str, labelnames: Sequence[str] | None = None) -> Optional[Counter]:
    """Create a Counter, or return the already-registered one."""

    try:
        return Counter(name, documentation, tuple(labelnames or ()))
    except ValueError:
        collector = _lookup_collector(name)
        if collector is None:
            logger.debug("Counter %s already registered but not found in registry.", name)
        return collector


def build_gauge(name: str, documentation: str, labelnames: Sequence[str] | None = None) -> Optional[Gauge]:
    try:
        return Gauge(name, documentation, tuple(labelnames or ()))
    except ValueError:
        collector = _lookup_collector(name)
        if collector is None:
            logger.debug("Gauge %s already registered but not found in registry.", name)
        return collector


__all__ = ["build_counter", "build_gauge"]
