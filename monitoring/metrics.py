"""
In-process metrics for the portal service.

Counters and histograms keyed by name and labels, exported as JSON on /metrics.
Chat sends, fallbacks, rate-limit rejections, retrieval and generation latency
and portal builds all report here.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Dict, Any, Tuple, Optional

MetricKey = Tuple[str, Tuple[Tuple[str, str], ...]]


class MetricsRegistry:
    _default = None

    def __init__(self):
        self._counters: Dict[MetricKey, float] = {}
        self._histograms: Dict[MetricKey, Dict[str, float]] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def default(cls) -> "MetricsRegistry":
        if cls._default is None:
            cls._default = cls()
        return cls._default

    @staticmethod
    def _key(name: str, labels: Optional[Dict[str, Any]]) -> MetricKey:
        items = tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))
        return name, items

    async def inc(self, name: str, value: float = 1.0, labels: Dict[str, Any] = None) -> None:
        key = self._key(name, labels)
        async with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + value

    async def observe(self, name: str, observation: float, labels: Dict[str, Any] = None) -> None:
        key = self._key(name, labels)
        async with self._lock:
            hist = self._histograms.setdefault(
                key, {"count": 0.0, "sum": 0.0, "min": observation, "max": observation}
            )
            hist["count"] += 1
            hist["sum"] += observation
            hist["min"] = min(hist["min"], observation)
            hist["max"] = max(hist["max"], observation)

    def counter_value(self, name: str, labels: Dict[str, Any] = None) -> float:
        return self._counters.get(self._key(name, labels), 0.0)

    def reset(self) -> None:
        self._counters.clear()
        self._histograms.clear()

    async def export(self) -> Dict[str, Any]:
        async with self._lock:
            counters = [
                {"name": name, "labels": dict(labels), "value": value}
                for (name, labels), value in self._counters.items()
            ]
            histograms = []
            for (name, labels), hist in self._histograms.items():
                histograms.append({
                    "name": name,
                    "labels": dict(labels),
                    "count": hist["count"],
                    "sum": hist["sum"],
                    "min": hist["min"],
                    "max": hist["max"],
                    "avg": hist["sum"] / hist["count"] if hist["count"] else 0.0,
                })
            return {"counters": counters, "histograms": histograms}


async def inc(name: str, value: float = 1.0, labels: Dict[str, Any] = None) -> None:
    await MetricsRegistry.default().inc(name, value, labels)


async def observe(name: str, observation: float, labels: Dict[str, Any] = None) -> None:
    await MetricsRegistry.default().observe(name, observation, labels)


@asynccontextmanager
async def timed(name: str, labels: Dict[str, Any] = None):
    """Observe the wall-clock duration of the wrapped block, including failed runs."""
    start = time.perf_counter()
    try:
        yield
    finally:
        await observe(name, time.perf_counter() - start, labels)


async def get_metrics() -> Dict[str, Any]:
    return await MetricsRegistry.default().export()
