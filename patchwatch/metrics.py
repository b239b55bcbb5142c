"""Prometheus metrics for patchwatch."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("patchwatch", "patchwatch application info")
app_info.info({"version": "0.1.0", "name": "patchwatch"})

# Sweep metrics
sweep_runs_total = Counter(
    "patchwatch_sweep_runs_total",
    "Total number of sweep runs",
    ["status"],
)

sweep_duration_seconds = Histogram(
    "patchwatch_sweep_duration_seconds",
    "Time spent in a full sweep",
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 900.0],
)

entities_checked_total = Counter(
    "patchwatch_entities_checked_total",
    "Tracked entities checked, by outcome",
    ["outcome"],
)

snapshot_cache_hits_total = Counter(
    "patchwatch_snapshot_cache_hits_total",
    "Entity checks skipped because the candidate set was unchanged",
)

# Decision metrics
decisions_total = Counter(
    "patchwatch_decisions_total",
    "Detection decisions, by action and method",
    ["action", "method"],
)

decision_confidence = Histogram(
    "patchwatch_decision_confidence",
    "Confidence of the acted-on detection result",
    buckets=[0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
)

related_titles_detected_total = Counter(
    "patchwatch_related_titles_detected_total",
    "Sequels, expansions and remasters spotted for tracked titles, by relation",
    ["relation"],
)

# Adapter metrics
adapter_requests_total = Counter(
    "patchwatch_adapter_requests_total",
    "External identity adapter calls",
    ["adapter", "operation", "status"],
)

adapter_request_duration_seconds = Histogram(
    "patchwatch_adapter_request_duration_seconds",
    "External identity adapter call latency",
    ["adapter"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0],
)

adapter_cooldown_active = Gauge(
    "patchwatch_adapter_cooldown_active",
    "1 while an adapter is cooling down after repeated failures",
    ["adapter"],
)

# AI scorer metrics
ai_scorer_calls_total = Counter(
    "patchwatch_ai_scorer_calls_total",
    "AI scorer invocations",
    ["scorer", "status"],
)

# Approval metrics
approvals_opened_total = Counter(
    "patchwatch_approvals_opened_total",
    "Pending approvals created",
)

approvals_resolved_total = Counter(
    "patchwatch_approvals_resolved_total",
    "Pending approvals resolved",
    ["status"],
)

open_approvals = Gauge(
    "patchwatch_open_approvals",
    "Pending approvals currently open",
)


def record_decision(action: str, method: str, confidence: float) -> None:
    """Record a detection decision."""
    decisions_total.labels(action=action, method=method).inc()
    decision_confidence.observe(confidence)


def record_adapter_call(adapter: str, operation: str, status: str, duration: float | None = None) -> None:
    """Record an adapter call outcome."""
    adapter_requests_total.labels(adapter=adapter, operation=operation, status=status).inc()
    if duration is not None:
        adapter_request_duration_seconds.labels(adapter=adapter).observe(duration)


def set_adapter_cooldown(adapter: str, active: bool) -> None:
    """Flag whether an adapter is in cooldown."""
    adapter_cooldown_active.labels(adapter=adapter).set(1 if active else 0)
