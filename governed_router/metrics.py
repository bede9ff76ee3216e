"""
Metrics — reason-tagged counters and histograms for routing transitions.
========================================================================
Follows an ABC + concrete-class pattern: the engine only talks to MetricsSink.

Label keys are restricted to {app, model, provider, reason}; unknown keys
are dropped.

Built-ins:
  InMemoryMetrics    — thread-safe counters/histograms (default; used by tests)
  PrometheusExporter — renders an InMemoryMetrics in Prometheus text format

Counters emitted by the engine:
  router_requests_total{app,reason}            terminal outcome per request
  router_stage_denied_total{app,reason}        stage that emptied the candidate set
  router_attempts_total{app,model,provider,reason}   one per provider attempt
  router_fallbacks_total{app,model,provider,reason}
  router_circuit_transitions_total{model,provider,reason}
  router_firewall_total{app,reason}
  router_lineage_buffered_total{reason}
  router_experiment_rollbacks_total{app,reason}
Histograms:
  router_invocation_latency_ms{app,model,provider}
  router_request_cost_usd{app,model,provider}
"""
from __future__ import annotations

import sys
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from pathlib import Path
from typing import Optional

LABEL_KEYS: tuple[str, ...] = ("app", "model", "provider", "reason")

LabelSet = tuple[tuple[str, str], ...]


def _labels(labels: Optional[dict]) -> LabelSet:
    if not labels:
        return ()
    return tuple((k, str(labels[k])) for k in LABEL_KEYS if labels.get(k) is not None)


class MetricsSink(ABC):

    @abstractmethod
    def increment(self, name: str, labels: Optional[dict] = None, value: float = 1.0) -> None:
        """Add value to a counter."""

    @abstractmethod
    def observe(self, name: str, value: float, labels: Optional[dict] = None) -> None:
        """Record one histogram sample."""


class NullMetrics(MetricsSink):
    def increment(self, name: str, labels: Optional[dict] = None, value: float = 1.0) -> None:
        pass

    def observe(self, name: str, value: float, labels: Optional[dict] = None) -> None:
        pass


class InMemoryMetrics(MetricsSink):
    """Counters and raw histogram samples keyed by (name, label set)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[tuple[str, LabelSet], float] = defaultdict(float)
        self._histograms: dict[tuple[str, LabelSet], list[float]] = defaultdict(list)

    def increment(self, name: str, labels: Optional[dict] = None, value: float = 1.0) -> None:
        key = (name, _labels(labels))
        with self._lock:
            self._counters[key] += value

    def observe(self, name: str, value: float, labels: Optional[dict] = None) -> None:
        key = (name, _labels(labels))
        with self._lock:
            self._histograms[key].append(value)

    def counter(self, name: str, **labels) -> float:
        """Sum of a counter over every label set that includes the given labels."""
        want = set(_labels(labels))
        with self._lock:
            return sum(
                v for (n, ls), v in self._counters.items()
                if n == name and want.issubset(set(ls))
            )

    def samples(self, name: str, **labels) -> list[float]:
        want = set(_labels(labels))
        with self._lock:
            out: list[float] = []
            for (n, ls), vals in self._histograms.items():
                if n == name and want.issubset(set(ls)):
                    out.extend(vals)
            return out

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "counters": {k: v for k, v in self._counters.items()},
                "histograms": {k: list(v) for k, v in self._histograms.items()},
            }


# ─────────────────────────────────────────────────────────────────────────────
# PrometheusExporter
# ─────────────────────────────────────────────────────────────────────────────

def _format_labels(ls: LabelSet) -> str:
    if not ls:
        return ""
    inner = ",".join(f'{k}="{v.replace(chr(34), "")}"' for k, v in ls)
    return "{" + inner + "}"


class PrometheusExporter:
    """
    Formats an InMemoryMetrics in Prometheus text exposition format.

    Pure stdlib — no prometheus_client dependency required. Counters are
    emitted as-is; histograms as summary-style _count and _sum series.
    """

    def __init__(self, output_file: Optional[str | Path] = None) -> None:
        self._output_file: Optional[Path] = Path(output_file) if output_file else None

    def render(self, metrics: InMemoryMetrics) -> str:
        snap = metrics.snapshot()
        lines: list[str] = []

        by_name: dict[str, list[tuple[LabelSet, float]]] = defaultdict(list)
        for (name, ls), value in snap["counters"].items():
            by_name[name].append((ls, value))
        for name in sorted(by_name):
            lines.append(f"# TYPE {name} counter")
            for ls, value in sorted(by_name[name]):
                lines.append(f"{name}{_format_labels(ls)} {value}")

        hist: dict[str, list[tuple[LabelSet, list[float]]]] = defaultdict(list)
        for (name, ls), values in snap["histograms"].items():
            hist[name].append((ls, values))
        for name in sorted(hist):
            lines.append(f"# TYPE {name} summary")
            for ls, values in sorted(hist[name]):
                lines.append(f"{name}_count{_format_labels(ls)} {len(values)}")
                lines.append(f"{name}_sum{_format_labels(ls)} {sum(values)}")
        return "\n".join(lines) + "\n"

    def export(self, metrics: InMemoryMetrics) -> None:
        content = self.render(metrics)
        if self._output_file is not None:
            self._output_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._output_file, "w", encoding="utf-8") as fh:
                fh.write(content)
        else:
            sys.stdout.write(content)
