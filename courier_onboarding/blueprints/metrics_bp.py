"""
Metrics blueprint — onboarding funnel, engine counters, job runs, request stats.

All metrics are in-memory or read-only queries (no external dependency).
Endpoints:
    GET /api/v1/metrics/onboarding — funnel + engine counters + last job runs
    GET /api/v1/metrics/requests   — request stats (last hour)
    GET /api/v1/metrics/errors     — error distribution
"""

import logging
from collections import Counter, defaultdict

from flask import Blueprint, current_app, jsonify, request

from courier_onboarding.middleware.timing import get_recent_metrics
from courier_onboarding.services.metrics import onboarding_funnel

logger = logging.getLogger(__name__)

metrics_bp = Blueprint("metrics", __name__, url_prefix="/api/v1/metrics")


@metrics_bp.route("/onboarding", methods=["GET"])
def onboarding_metrics():
    """Status funnel from the store plus the engine's in-process counters."""
    engine = current_app.extensions["onboarding"]
    scheduler = current_app.extensions.get("scheduler")
    return jsonify({
        "funnel": onboarding_funnel(),
        "counters": engine.metrics.snapshot(),
        "jobs": scheduler.last_runs() if scheduler else {},
    })


@metrics_bp.route("/requests", methods=["GET"])
def request_stats():
    """Aggregate request stats over the last hour (or custom window)."""
    window = request.args.get("window", 3600, type=int)
    recent = get_recent_metrics(seconds=window)

    if not recent:
        return jsonify({
            "window_seconds": window,
            "total_requests": 0,
            "avg_latency_ms": 0,
            "p95_latency_ms": 0,
            "status_distribution": {},
            "method_distribution": {},
        })

    latencies = sorted(m["ms"] for m in recent)
    p95_idx = max(0, int(len(latencies) * 0.95) - 1)

    status_dist: Counter = Counter()
    method_dist: Counter = Counter()
    for m in recent:
        status_dist[str(m["status"])] += 1
        method_dist[m["method"]] += 1

    return jsonify({
        "window_seconds": window,
        "total_requests": len(recent),
        "avg_latency_ms": round(sum(latencies) / len(latencies), 1),
        "p95_latency_ms": latencies[p95_idx],
        "min_latency_ms": latencies[0],
        "max_latency_ms": latencies[-1],
        "status_distribution": dict(status_dist),
        "method_distribution": dict(method_dist),
    })


@metrics_bp.route("/errors", methods=["GET"])
def error_distribution():
    """Error breakdown by status code and endpoint."""
    window = request.args.get("window", 3600, type=int)
    recent = get_recent_metrics(seconds=window)
    errors = [m for m in recent if m["status"] >= 400]

    by_status: Counter = Counter()
    by_endpoint: defaultdict = defaultdict(int)
    for m in errors:
        by_status[str(m["status"])] += 1
        by_endpoint[f'{m["method"]} {m["route"]}'] += 1

    top_endpoints = sorted(by_endpoint.items(), key=lambda x: -x[1])[:10]

    return jsonify({
        "window_seconds": window,
        "total_errors": len(errors),
        "by_status": dict(by_status),
        "top_endpoints": [{"endpoint": ep, "count": c} for ep, c in top_endpoints],
    })
