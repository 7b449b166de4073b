"""
Prometheus text format parser for the subset the kubelet resource
endpoint uses (counters and gauges, optional millisecond timestamps).
No external deps.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class MetricSample:
    name: str
    labels: Dict[str, str]
    value: float
    timestamp_ms: Optional[int] = None


@dataclass
class MetricFamily:
    name: str
    metric_type: str  # "gauge", "counter", "untyped", ...
    help_text: str
    samples: List[MetricSample] = field(default_factory=list)


# Matches key="value" pairs inside braces, e.g. {namespace="kube-system",pod="dns"}
_LABEL_RE = re.compile(r'(\w+)="((?:[^"\\]|\\.)*)"')
_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")


def _unescape(value: str) -> str:
    return value.replace('\\"', '"').replace("\\n", "\n").replace("\\\\", "\\")


def parse_labels(label_str: str) -> Dict[str, str]:
    if not label_str:
        return {}
    return {k: _unescape(v) for k, v in _LABEL_RE.findall(label_str)}


def parse_prometheus_text(text: str) -> Dict[str, MetricFamily]:
    """Returns a dict keyed by base metric name (strips _total).

    Raises ValueError on a sample line that cannot be parsed; a kubelet
    that sends garbage is treated as broken rather than partially trusted.
    """
    families: Dict[str, MetricFamily] = {}
    current_type: Dict[str, str] = {}
    current_help: Dict[str, str] = {}

    for lineno, line in enumerate(text.split("\n"), start=1):
        line = line.strip()

        if not line:
            continue

        if line.startswith("# HELP "):
            parts = line[7:].split(" ", 1)
            if len(parts) == 2:
                current_help[parts[0]] = parts[1]
            continue

        if line.startswith("# TYPE "):
            parts = line[7:].split(" ", 1)
            if len(parts) == 2:
                current_type[parts[0]] = parts[1].strip()
            continue

        if line.startswith("#"):
            continue

        # Sample line: metric_name{labels} value [timestamp]
        # or: metric_name value [timestamp]
        brace_start = line.find("{")
        if brace_start != -1:
            name = line[:brace_start]
            brace_end = line.rfind("}")
            if brace_end < brace_start:
                raise ValueError(f"line {lineno}: unterminated label set")
            label_str = line[brace_start + 1:brace_end]
            rest = line[brace_end + 1:].split()
        else:
            parts = line.split()
            name = parts[0]
            label_str = ""
            rest = parts[1:]

        if not _METRIC_NAME_RE.match(name):
            raise ValueError(f"line {lineno}: invalid metric name {name!r}")
        if not rest or len(rest) > 2:
            raise ValueError(f"line {lineno}: expected value and optional timestamp")

        try:
            value = float(rest[0])  # accepts NaN, +Inf, 1.2e+07
            timestamp_ms = int(rest[1]) if len(rest) == 2 else None
        except ValueError:
            raise ValueError(f"line {lineno}: bad sample value in {line!r}") from None

        labels = parse_labels(label_str)

        base_name = name[: -len("_total")] if name.endswith("_total") else name

        if base_name not in families:
            families[base_name] = MetricFamily(
                name=base_name,
                metric_type=current_type.get(name, current_type.get(base_name, "untyped")),
                help_text=current_help.get(name, current_help.get(base_name, "")),
            )

        families[base_name].samples.append(
            MetricSample(name=name, labels=labels, value=value, timestamp_ms=timestamp_ms)
        )

    return families


def get_gauge(families: Dict[str, MetricFamily], name: str) -> Optional[float]:
    family = families.get(name)
    if family and family.samples:
        return family.samples[0].value
    return None


def iter_samples(families: Dict[str, MetricFamily], name: str) -> List[MetricSample]:
    """All finite samples of a family, in exposition order."""
    family = families.get(name)
    if not family:
        return []
    return [s for s in family.samples if math.isfinite(s.value)]
