from __future__ import annotations

import threading
import time
from collections import deque
from statistics import mean
from typing import Any, Deque, Dict, Iterable, Tuple

LabelKey = Tuple[Tuple[str, str], ...]  # sorted (k, v) pairs


def _labels_key(labels: Dict[str, Any] | None) -> LabelKey:
    if not labels:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def _pct(sorted_vals: Iterable[float], q: float) -> float:
    vals = list(sorted_vals)
    if not vals:
        return 0.0
    idx = max(0, min(len(vals) - 1, int(round((len(vals) - 1) * q))))
    return vals[idx]


class Counter:
    def __init__(self, name: str, labels: LabelKey):
        self.name = name
        self.labels = labels
        self._value = 0.0
        self._lock = threading.Lock()

    def inc(self, n: float = 1.0) -> None:
        with self._lock:
            self._value += n

    def value(self) -> float:
        with self._lock:
            return self._value


class Histogram:
    """Keeps the most recent ``maxlen`` observations (latencies in ms)."""
    def __init__(self, name: str, labels: LabelKey, maxlen: int = 2048):
        self.name = name
        self.labels = labels
        self._values: Deque[float] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def observe(self, v: float) -> None:
        with self._lock:
            self._values.append(float(v))

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            vals = sorted(self._values)
        if not vals:
            return {"count": 0, "min": 0.0, "max": 0.0, "mean": 0.0, "p50": 0.0, "p99": 0.0}
        return {
            "count": float(len(vals)),
            "min": vals[0],
            "max": vals[-1],
            "mean": mean(vals),
            "p50": _pct(vals, 0.50),
            "p99": _pct(vals, 0.99),
        }


class _Registry:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._counters: Dict[Tuple[str, LabelKey], Counter] = {}
        self._hists: Dict[Tuple[str, LabelKey], Histogram] = {}

    def counter(self, name: str, labels: Dict[str, Any] | None) -> Counter:
        key = (name, _labels_key(labels))
        with self._lock:
            m = self._counters.get(key)
            if m is None:
                m = self._counters[key] = Counter(name, key[1])
            return m

    def hist(self, name: str, labels: Dict[str, Any] | None) -> Histogram:
        key = (name, _labels_key(labels))
        with self._lock:
            m = self._hists.get(key)
            if m is None:
                m = self._hists[key] = Histogram(name, key[1])
            return m

    def items(self):
        with self._lock:
            return list(self._counters.values()), list(self._hists.values())

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()
            self._hists.clear()


_REG = _Registry()


def inc(name: str, n: float = 1.0, **labels: Any) -> None:
    _REG.counter(name, labels).inc(n)


def observe_hist(name: str, v: float, **labels: Any) -> None:
    _REG.hist(name, labels).observe(v)


def counter_value(name: str, **labels: Any) -> float:
    """Current value of one labelled counter (0.0 if never incremented)."""
    return _REG.counter(name, labels).value()


class Timer:
    """Context manager reporting elapsed milliseconds into a histogram."""
    def __init__(self, hist_name: str, **labels: Any) -> None:
        self.hist_name = hist_name
        self.labels = labels
        self.elapsed_ms = 0.0
        self._t0 = 0.0

    def __enter__(self):
        self._t0 = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.elapsed_ms = (time.perf_counter() - self._t0) * 1000.0
        observe_hist(self.hist_name, self.elapsed_ms, **self.labels)
        return False


def snapshot_all() -> dict:
    """Snapshot of every metric (for tests and debug endpoints)."""
    counters, hists = _REG.items()
    return {
        "counters": [{"name": m.name, "labels": dict(m.labels), "value": m.value()} for m in counters],
        "hists": [{"name": m.name, "labels": dict(m.labels), **m.snapshot()} for m in hists],
    }


def reset() -> None:
    _REG.clear()
