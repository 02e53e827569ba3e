#!/usr/bin/env python3
"""
Web UI for Kubernetes resource allocations
Displays the saved allocation report (`orchestrator.py --save`) as a tree table

Multi-cluster support:
- Cluster selector dropdown to switch between clusters
- Loads {cluster_name}_allocations.json from OUTPUT_DIR
"""
import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from flask import Flask, render_template, jsonify, Response, request

from config import (
    setup_logging,
    CLUSTERS,
    CLUSTER_NAME,
    get_report_output_path,
)

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)

# Get the directory where ui.py is located
BASE_DIR = Path(__file__).parent.resolve()

app = Flask(__name__, template_folder=str(BASE_DIR / 'templates'))

# Metrics for observability
_metrics = {
    'requests_total': 0,
    'requests_by_endpoint': {},
    'errors_total': 0,
    'start_time': time.time()
}


def _record_request(endpoint: str):
    """Record request metrics"""
    _metrics['requests_total'] += 1
    _metrics['requests_by_endpoint'][endpoint] = _metrics['requests_by_endpoint'].get(endpoint, 0) + 1


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def get_available_clusters():
    """Get list of clusters that have a saved report"""
    available = []
    for cluster in CLUSTERS:
        cluster_name = cluster.get('cluster_name', 'unknown')
        if Path(get_report_output_path(cluster_name)).exists():
            available.append({
                'cluster_name': cluster_name,
                'environment': cluster.get('environment', ''),
            })
    return available


def load_json(filepath):
    """Load JSON file safely"""
    try:
        filepath = Path(filepath)
        if not filepath.exists():
            return None
        with open(filepath, 'r') as f:
            return json.load(f)
    except Exception as e:
        logger.error(f"Error loading {filepath}: {e}")
        _metrics['errors_total'] += 1
        return None


def load_report(cluster_name: str):
    return load_json(get_report_output_path(cluster_name))


def _cell(resource, category, ratio_name=None):
    value = (resource.get('values') or {}).get(category)
    text = value['text'] if value else '__'
    if ratio_name is None:
        return text
    r = (resource.get('ratios') or {}).get(ratio_name)
    if r is None:
        return text
    return f"({r * 100:.0f}%) {text}"


def flatten_tree(node, depth=0, usage_available=False):
    """Rows for the dashboard table: one per (tree node, resource kind)"""
    rows = []
    for kind in sorted(node.get('resources') or {}):
        res = node['resources'][kind]
        free = res.get('free')
        rows.append({
            'depth': depth,
            'label': node.get('label'),
            'level': node.get('level'),
            'kind': kind,
            'used': _cell(res, 'used', 'used/allocatable') if usage_available else None,
            'requested': _cell(res, 'requested', 'requested/allocatable'),
            'limit': _cell(res, 'limit', 'limit/allocatable'),
            'allocatable': _cell(res, 'allocatable'),
            'free': free['text'] if free else '__',
        })
    for child in node.get('children') or []:
        rows.extend(flatten_tree(child, depth + 1, usage_available))
    return rows


@app.route('/')
def index():
    """Main dashboard with cluster selector"""
    _record_request('/')

    selected_cluster = request.args.get('cluster', CLUSTER_NAME)
    available_clusters = get_available_clusters()

    report = load_report(selected_cluster)
    if not report:
        return render_template('error.html',
                               message=f"No report found for cluster '{selected_cluster}'. "
                                       f"Run: python orchestrator.py --save",
                               available_clusters=available_clusters)

    rows = flatten_tree(report.get('tree') or {}, usage_available=report.get('usage_available', False))
    return render_template('dashboard.html',
                           report=report,
                           rows=rows,
                           selected_cluster=selected_cluster,
                           available_clusters=available_clusters)


@app.route('/api/clusters')
def get_clusters():
    """API endpoint to list available clusters"""
    _record_request('/api/clusters')
    return jsonify({
        'clusters': get_available_clusters(),
        'active_cluster': CLUSTER_NAME
    })


@app.route('/api/allocations')
def get_allocations():
    """API endpoint for the saved report"""
    _record_request('/api/allocations')
    cluster = request.args.get('cluster', CLUSTER_NAME)
    data = load_report(cluster)
    if data:
        return jsonify(data)
    return jsonify({"error": "Not found"}), 404


@app.route('/health')
def health():
    """Health check endpoint for liveness probes"""
    _record_request('/health')
    return jsonify({
        "status": "healthy",
        "timestamp": _timestamp()
    })


@app.route('/ready')
def ready():
    """Readiness check endpoint - verifies at least one report exists"""
    _record_request('/ready')
    available = get_available_clusters()
    if available:
        return jsonify({
            "status": "ready",
            "clusters_available": len(available),
            "clusters": [c['cluster_name'] for c in available],
            "timestamp": _timestamp()
        })
    if load_report(CLUSTER_NAME):
        return jsonify({
            "status": "ready",
            "clusters_available": 1,
            "clusters": [CLUSTER_NAME],
            "timestamp": _timestamp()
        })
    return jsonify({
        "status": "not_ready",
        "reason": "No allocation reports found",
        "timestamp": _timestamp()
    }), 503


@app.route('/metrics')
def metrics():
    """Prometheus metrics endpoint for self-monitoring"""
    _record_request('/metrics')
    uptime = time.time() - _metrics['start_time']
    report = load_report(CLUSTER_NAME)

    lines = [
        "# HELP kube_allocations_ui_requests_total Total number of HTTP requests",
        "# TYPE kube_allocations_ui_requests_total counter",
        f"kube_allocations_ui_requests_total {_metrics['requests_total']}",
        "",
        "# HELP kube_allocations_ui_errors_total Total number of errors",
        "# TYPE kube_allocations_ui_errors_total counter",
        f"kube_allocations_ui_errors_total {_metrics['errors_total']}",
        "",
        "# HELP kube_allocations_ui_uptime_seconds UI uptime in seconds",
        "# TYPE kube_allocations_ui_uptime_seconds gauge",
        f"kube_allocations_ui_uptime_seconds {uptime:.2f}",
        "",
        "# HELP kube_allocations_ui_report_available Whether a report exists for the active cluster",
        "# TYPE kube_allocations_ui_report_available gauge",
        f"kube_allocations_ui_report_available {1 if report else 0}",
        "",
        "# HELP kube_allocations_ui_report_skipped_facts Facts skipped while building the report",
        "# TYPE kube_allocations_ui_report_skipped_facts gauge",
        f"kube_allocations_ui_report_skipped_facts {(report or {}).get('skipped_count', 0)}",
    ]

    lines.append("")
    lines.append("# HELP kube_allocations_ui_requests_by_endpoint Requests per endpoint")
    lines.append("# TYPE kube_allocations_ui_requests_by_endpoint counter")
    for endpoint, count in _metrics['requests_by_endpoint'].items():
        lines.append(f'kube_allocations_ui_requests_by_endpoint{{endpoint="{endpoint}"}} {count}')

    return Response('\n'.join(lines), mimetype='text/plain')


if __name__ == '__main__':
    logger.info("Kubernetes Allocations UI")
    logger.info("Dashboard: http://127.0.0.1:8080")
    logger.info("Health: http://127.0.0.1:8080/health")
    logger.info("Ready: http://127.0.0.1:8080/ready")
    logger.info("Metrics: http://127.0.0.1:8080/metrics")
    app.run(debug=False, host='127.0.0.1', port=8080)
