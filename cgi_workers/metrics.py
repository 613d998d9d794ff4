"""
In-process metrics for the CGI worker.

Counters, gauges and latency samples are keyed by dotted names:
  requests.submit, jobs.completed, jobs.failed
  providers.<adapter>.ok / providers.<adapter>.error   (+ latency)
  jobs.duration                                         (latency only, whole pipeline)

Everything is ephemeral; job history lives in the job store.
"""

import time
import threading
from collections import defaultdict, deque
from typing import Deque, Dict, Optional

_lock = threading.Lock()

MAX_SAMPLES = 100
MAX_ERRORS = 50

_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = {}
_latency: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=MAX_SAMPLES))
_errors: Deque[dict] = deque(maxlen=MAX_ERRORS)


def inc_counter(name: str, amount: int = 1):
    with _lock:
        _counters[name] += amount


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_latency(name: str, duration_ms: float):
    """Keep the last MAX_SAMPLES durations (ms) for `name`."""
    with _lock:
        _latency[name].append(duration_ms)


def record_error(
    source: str,
    error_type: str,
    message: str,
    account_id: str = "",
    job_id: Optional[str] = None,
):
    with _lock:
        _errors.append({
            "timestamp": time.time(),
            "source": source,
            "error_type": error_type,
            "message": message[:300],
            "account_id": account_id,
            "job_id": job_id,
        })


def _percentiles(samples) -> dict:
    ordered = sorted(samples)
    n = len(ordered)
    return {
        "p50": ordered[n // 2],
        "p95": ordered[int(n * 0.95)] if n >= 20 else ordered[-1],
        "avg": sum(ordered) / n,
        "count": n,
    }


def get_snapshot() -> dict:
    now = time.time()
    with _lock:
        completed = _counters.get("jobs.completed", 0)
        failed = _counters.get("jobs.failed", 0)
        finished = completed + failed

        patterns: Dict[str, int] = defaultdict(int)
        for err in _errors:
            patterns[f"{err['source']}:{err['error_type']}"] += 1

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": {name: _percentiles(s) for name, s in _latency.items() if s},
            "jobs": {
                "completed": completed,
                "failed": failed,
                "success_rate": round(completed / finished, 4) if finished else None,
            },
            "recent_errors": list(_errors)[-10:],
            "error_patterns": dict(patterns),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }


def reset():
    with _lock:
        _counters.clear()
        _gauges.clear()
        _latency.clear()
        _errors.clear()
