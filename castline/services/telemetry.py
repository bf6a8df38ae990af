from __future__ import annotations

import math
import time
from collections import Counter, deque
from dataclasses import dataclass
from typing import Deque, Iterable


@dataclass(frozen=True)
class _Sample:
    # ``key`` is the request path for API samples and the integration name for outbound calls.
    ts: float
    key: str
    latency_ms: float
    ok: bool


_requests: Deque[_Sample] = deque(maxlen=20000)
_outbound: Deque[_Sample] = deque(maxlen=10000)
_stream_durations: Deque[float] = deque(maxlen=5000)
_counters: Counter[str] = Counter()


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _requests.append(_Sample(ts=time.time(), key=path, latency_ms=latency_ms, ok=status_code < 500))


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _outbound.append(_Sample(ts=time.time(), key=integration, latency_ms=latency_ms, ok=success))


def record_stream_duration(duration_ms: float) -> None:
    _stream_durations.append(duration_ms)


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def _recent(samples: Iterable[_Sample], window_s: int) -> list[_Sample]:
    cutoff = time.time() - window_s
    return [sample for sample in samples if sample.ts >= cutoff]


def _p95(values: list[float]) -> float:
    ordered = sorted(values)
    return ordered[max(0, math.ceil(0.95 * len(ordered)) - 1)]


def p95_latency(window_s: int, *, path_prefix: str | None = None) -> float | None:
    latencies = [
        sample.latency_ms
        for sample in _recent(_requests, window_s)
        if path_prefix is None or sample.key.startswith(path_prefix)
    ]
    return _p95(latencies) if latencies else None


def external_call_stats(window_s: int) -> dict[str, dict[str, float | int]]:
    """Per-integration call count, failures, p95 and max latency (ms) over the window."""
    by_integration: dict[str, list[_Sample]] = {}
    for sample in _recent(_outbound, window_s):
        by_integration.setdefault(sample.key, []).append(sample)
    stats: dict[str, dict[str, float | int]] = {}
    for integration, samples in by_integration.items():
        latencies = [sample.latency_ms for sample in samples]
        stats[integration] = {
            "calls": len(samples),
            "failures": sum(not sample.ok for sample in samples),
            "p95": _p95(latencies),
            "max": max(latencies),
        }
    return stats


def stream_duration_stats() -> dict[str, float | None]:
    durations = list(_stream_durations)
    if not durations:
        return {"p95": None, "max": None}
    return {"p95": _p95(durations), "max": max(durations)}


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    for buffer in (_requests, _outbound, _stream_durations, _counters):
        buffer.clear()
