import datetime
import json
import math
import pathlib
import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Iterable, Sequence

METRICS_DIR = pathlib.Path("metrics")
REPORT = pathlib.Path("reports/attempts.md")
LOG_GLOB = "attempts-*.jsonl"


def _normalize_duration(value: object) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return 0
        return int(value)
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError:
            return 0
        if not math.isfinite(parsed):
            return 0
        return int(parsed)
    return 0


def _normalize_cost(value: object) -> Decimal:
    if isinstance(value, bool) or value is None:
        return Decimal(0)
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        return Decimal(0)
    if not parsed.is_finite() or parsed < 0:
        return Decimal(0)
    return parsed


@dataclass
class VendorSummary:
    attempts: int = 0
    ok: int = 0
    latencies: list[int] = field(default_factory=list)
    cost: Decimal = Decimal(0)

    @property
    def success_rate_text(self) -> str:
        if self.attempts == 0:
            return "n/a"
        return f"{self.ok / self.attempts:.2%}"


def iter_records(paths: Iterable[pathlib.Path]) -> Iterable[dict]:
    for path in paths:
        with path.open(encoding="utf-8") as f:
            for line in f:
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    obj = json.loads(stripped)
                except json.JSONDecodeError:
                    continue
                if isinstance(obj, dict):
                    yield obj


def load_attempts(metrics_dir: pathlib.Path | None = None) -> dict[str, VendorSummary]:
    directory = metrics_dir or METRICS_DIR
    summaries: defaultdict[str, VendorSummary] = defaultdict(VendorSummary)
    if not directory.exists():
        return dict(summaries)
    for record in iter_records(sorted(directory.glob(LOG_GLOB))):
        vendor = str(record.get("vendor") or "unknown")
        summary = summaries[vendor]
        summary.attempts += 1
        if record.get("ok") is True:
            summary.ok += 1
            summary.cost += _normalize_cost(record.get("cost_usd"))
        if "latency_ms" in record and record.get("latency_ms") is not None:
            summary.latencies.append(_normalize_duration(record.get("latency_ms")))
    return dict(summaries)


def compute_p95(durations: Sequence[object]) -> int:
    normalized = [_normalize_duration(value) for value in durations]
    if not normalized:
        return 0
    if len(normalized) == 1:
        return normalized[0]

    sorted_durations = sorted(normalized)
    sample_count = len(sorted_durations)

    if sample_count < 20:
        try:
            return int(statistics.quantiles(sorted_durations, n=20, method="inclusive")[18])
        except statistics.StatisticsError:
            index = min(sample_count - 1, math.ceil(0.95 * sample_count) - 1)
            return int(sorted_durations[index])

    try:
        return int(statistics.quantiles(sorted_durations, n=20)[18])
    except statistics.StatisticsError:
        index = min(sample_count - 1, math.ceil(0.95 * sample_count) - 1)
        return int(sorted_durations[index])


def _write_report(report_path: pathlib.Path, summaries: dict[str, VendorSummary], timestamp: str) -> None:
    total_attempts = sum(summary.attempts for summary in summaries.values())
    total_ok = sum(summary.ok for summary in summaries.values())
    total_cost = sum((summary.cost for summary in summaries.values()), Decimal(0))
    all_latencies = [value for summary in summaries.values() for value in summary.latencies]
    overall_rate = f"{total_ok / total_attempts:.2%}" if total_attempts else "n/a"

    report_path.parent.mkdir(parents=True, exist_ok=True)
    with report_path.open("w", encoding="utf-8") as handle:
        handle.write(f"# Attempt Report ({timestamp})\n\n")
        handle.write(f"- Attempts: {total_attempts}\n")
        handle.write(f"- Success rate: {overall_rate}\n")
        handle.write(f"- Latency p95: {compute_p95(all_latencies)} ms\n")
        handle.write(f"- Total cost: ${total_cost:.6f}\n\n")
        if not summaries:
            return
        handle.write("| Vendor | Attempts | Success rate | p95 latency (ms) | Cost (USD) |\n")
        handle.write("|---|---|---|---|---|\n")
        for vendor in sorted(summaries):
            summary = summaries[vendor]
            handle.write(
                f"| {vendor} | {summary.attempts} | {summary.success_rate_text} | "
                f"{compute_p95(summary.latencies)} | {summary.cost:.6f} |\n"
            )


def main() -> None:
    summaries = load_attempts()
    timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()
    _write_report(REPORT, summaries, timestamp)


if __name__ == "__main__":
    main()
