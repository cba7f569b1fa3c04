"""Per-attempt metrics.

Every adapter attempt is appended to ``attempts-YYYYMMDD.jsonl`` and folded
into Prometheus counters and a latency histogram labelled by vendor and
outcome. The text exposition is also mirrored to ``prometheus.prom`` in the
metrics directory for node-exporter style scraping.
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
import time
from collections import defaultdict
from typing import Any, Optional

_PROM_FILE = "prometheus.prom"
_HISTOGRAM_BUCKETS: tuple[float, ...] = (0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0)


def _new_histogram_state() -> dict[str, Any]:
    return {"buckets": [0] * (len(_HISTOGRAM_BUCKETS) + 1), "count": 0, "sum": 0.0}


class _PromMetrics:
    __slots__ = ("_dir", "_lock", "_counter", "_cost", "_histogram")

    def __init__(self, dirpath: str) -> None:
        self._dir = dirpath
        self._lock = threading.Lock()
        self._counter: defaultdict[tuple[str, str], int] = defaultdict(int)
        self._cost: defaultdict[str, float] = defaultdict(float)
        self._histogram: defaultdict[tuple[str, str], dict[str, Any]] = defaultdict(_new_histogram_state)

    def record(self, payload: dict[str, Any]) -> None:
        vendor = str(payload.get("vendor") or "unknown")
        ok_label = "true" if bool(payload.get("ok")) else "false"
        latency_seconds = max(float(payload.get("latency_ms") or 0.0) / 1000.0, 0.0)
        cost = float(payload.get("cost_usd") or 0.0)

        with self._lock:
            self._counter[(vendor, ok_label)] += 1
            if cost > 0:
                self._cost[vendor] += cost
            hist_state = self._histogram[(vendor, ok_label)]
            buckets = hist_state["buckets"]
            for idx, bound in enumerate(_HISTOGRAM_BUCKETS):
                if latency_seconds <= bound:
                    buckets[idx] += 1
            buckets[-1] += 1
            hist_state["count"] += 1
            hist_state["sum"] += latency_seconds
            self._write_locked()

    def render(self) -> str:
        with self._lock:
            return self._render_locked()

    def _render_locked(self) -> str:
        lines: list[str] = [
            "# HELP relay_attempts_total Total number of vendor attempts",
            "# TYPE relay_attempts_total counter",
        ]
        for (vendor, ok_label), value in sorted(self._counter.items()):
            lines.append(f'relay_attempts_total{{vendor="{vendor}",ok="{ok_label}"}} {value}')
        lines.append("# HELP relay_cost_usd_total Accumulated cost of successful attempts")
        lines.append("# TYPE relay_cost_usd_total counter")
        for vendor, value in sorted(self._cost.items()):
            lines.append(f'relay_cost_usd_total{{vendor="{vendor}"}} {value:.6f}')
        lines.append("# HELP relay_attempt_latency_seconds Wall-clock latency of vendor attempts")
        lines.append("# TYPE relay_attempt_latency_seconds histogram")
        for (vendor, ok_label), state in sorted(self._histogram.items()):
            buckets = state["buckets"]
            for idx, bound in enumerate(_HISTOGRAM_BUCKETS):
                le_value = format(bound, ".6g")
                lines.append(
                    f'relay_attempt_latency_seconds_bucket{{vendor="{vendor}",ok="{ok_label}",le="{le_value}"}} {buckets[idx]}'
                )
            lines.append(
                f'relay_attempt_latency_seconds_bucket{{vendor="{vendor}",ok="{ok_label}",le="+Inf"}} {buckets[-1]}'
            )
            lines.append(
                f'relay_attempt_latency_seconds_count{{vendor="{vendor}",ok="{ok_label}"}} {state["count"]}'
            )
            lines.append(
                f'relay_attempt_latency_seconds_sum{{vendor="{vendor}",ok="{ok_label}"}} {state["sum"]}'
            )
        return "\n".join(lines) + "\n"

    def _write_locked(self) -> None:
        os.makedirs(self._dir, exist_ok=True)
        prom_path = os.path.join(self._dir, _PROM_FILE)
        tmp_path = f"{prom_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(self._render_locked())
        os.replace(tmp_path, prom_path)


class MetricsLogger:
    def __init__(self, dirpath: str):
        self.dir = dirpath
        os.makedirs(self.dir, exist_ok=True)
        self._lock: Optional[asyncio.Lock] = None
        self._prom = _PromMetrics(self.dir)

    def _file(self) -> str:
        return os.path.join(self.dir, f"attempts-{time.strftime('%Y%m%d')}.jsonl")

    async def write(self, record: dict[str, Any]) -> None:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            with open(self._file(), "a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        self._prom.record(record)

    def render_prometheus(self) -> bytes:
        return self._prom.render().encode("utf-8")


__all__ = ["MetricsLogger"]
