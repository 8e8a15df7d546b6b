from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class SyncSample:
    ts: float
    integration: str
    duration_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_sync_samples: Deque[SyncSample] = deque(maxlen=5000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for ops summaries.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_sync(*, integration: str, duration_ms: float, success: bool) -> None:
    # Capture provider sync cycle durations and outcomes.
    _sync_samples.append(
        SyncSample(ts=time.time(), integration=integration, duration_ms=duration_ms, success=success)
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for rate-limit, quota and job transition dashboards.
    _counters[name] += value


def _window_requests(window_s: int) -> list[RequestSample]:
    cutoff = time.time() - window_s
    return [sample for sample in _request_samples if sample.ts >= cutoff]


def availability(window_s: int) -> float | None:
    # Calculate availability as % of non-5xx requests over the window.
    samples = _window_requests(window_s)
    if not samples:
        return None
    total = len(samples)
    failures = sum(1 for sample in samples if sample.status_code >= 500)
    return ((total - failures) / total) * 100.0


def sync_stats_by_integration(window_s: int) -> dict[str, dict[str, float | int | None]]:
    # Aggregate p95 duration and outcome counts per provider in the window.
    cutoff = time.time() - window_s
    grouped: dict[str, list[SyncSample]] = defaultdict(list)
    for sample in _sync_samples:
        if sample.ts < cutoff:
            continue
        grouped[sample.integration].append(sample)
    result: dict[str, dict[str, float | int | None]] = {}
    for integration, samples in grouped.items():
        durations = sorted(sample.duration_ms for sample in samples)
        p95_idx = max(0, math.ceil(0.95 * len(durations)) - 1)
        result[integration] = {
            "runs": len(samples),
            "failures": sum(1 for sample in samples if not sample.success),
            "p95_ms": durations[p95_idx],
            "max_ms": durations[-1],
        }
    return result


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def reset_telemetry() -> None:
    # Clear in-process samples for deterministic tests.
    _request_samples.clear()
    _sync_samples.clear()
    _counters.clear()
