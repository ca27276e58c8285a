"""Injected metrics collection.

Components only depend on ``MetricsCollector`` (``incr`` / ``observe``). The
in-memory implementation keeps counters and summaries per label set, plus a
bounded sample buffer per summary for p50/p95, and renders them in the
Prometheus text exposition format for ``GET /metrics``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

LabelSet = tuple[tuple[str, str], ...]
RENDERED_QUANTILES = (0.5, 0.95)


class MetricsCollector(Protocol):
    def incr(self, name: str, value: float = 1.0, **labels: str) -> None: ...

    def observe(self, name: str, value: float, **labels: str) -> None: ...


@dataclass(slots=True)
class SummaryValue:
    count: int = 0
    total: float = 0.0
    samples: list[float] = field(default_factory=list)

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0


class InMemoryMetrics:
    def __init__(self, *, max_samples: int = 1000) -> None:
        self.max_samples = max(1, max_samples)
        self._counters: dict[str, dict[LabelSet, float]] = {}
        self._summaries: dict[str, dict[LabelSet, SummaryValue]] = {}

    def incr(self, name: str, value: float = 1.0, **labels: str) -> None:
        series = self._counters.setdefault(name, {})
        key = _label_key(labels)
        series[key] = series.get(key, 0.0) + value

    def observe(self, name: str, value: float, **labels: str) -> None:
        series = self._summaries.setdefault(name, {})
        summary = series.setdefault(_label_key(labels), SummaryValue())
        summary.count += 1
        summary.total += value
        summary.samples.append(value)
        if len(summary.samples) > self.max_samples:
            del summary.samples[: len(summary.samples) - self.max_samples]

    def counter(self, name: str, **labels: str) -> float:
        return self._counters.get(name, {}).get(_label_key(labels), 0.0)

    def counter_total(self, name: str) -> float:
        return sum(self._counters.get(name, {}).values())

    def summary(self, name: str, **labels: str) -> SummaryValue:
        return self._summaries.get(name, {}).get(_label_key(labels), SummaryValue())

    def percentile(self, name: str, pct: float, **labels: str) -> float:
        return _quantile(self.summary(name, **labels).samples, pct / 100.0)

    def render(self) -> str:
        lines: list[str] = []
        for name in sorted(self._counters):
            lines.append(f"# TYPE {name} counter")
            for labels, value in sorted(self._counters[name].items()):
                lines.append(f"{name}{_format_labels(labels)} {_format_value(value)}")
        for name in sorted(self._summaries):
            lines.append(f"# TYPE {name} summary")
            for labels, summary in sorted(self._summaries[name].items()):
                for quantile in RENDERED_QUANTILES:
                    value = _quantile(summary.samples, quantile)
                    quantile_labels = labels + (("quantile", str(quantile)),)
                    lines.append(f"{name}{_format_labels(quantile_labels)} {_format_value(value)}")
                rendered = _format_labels(labels)
                lines.append(f"{name}_sum{rendered} {_format_value(summary.total)}")
                lines.append(f"{name}_count{rendered} {summary.count}")
        return "\n".join(lines) + "\n"


def _quantile(samples: list[float], quantile: float) -> float:
    if not samples:
        return 0.0
    ordered = sorted(samples)
    return ordered[int(quantile * (len(ordered) - 1))]


def _label_key(labels: dict[str, str]) -> LabelSet:
    return tuple(sorted((key, str(value)) for key, value in labels.items()))


def _format_labels(labels: LabelSet) -> str:
    if not labels:
        return ""
    rendered = ",".join(f'{key}="{_escape_label_value(value)}"' for key, value in labels)
    return "{" + rendered + "}"


def _escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_value(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))
