"""
Test fixtures and configuration for pytest
"""
import pytest


def make_node(name, allocatable, capacity=None):
    """Node record in the Kubernetes API JSON shape"""
    return {
        "metadata": {"name": name},
        "status": {
            "capacity": dict(capacity if capacity is not None else allocatable),
            "allocatable": dict(allocatable),
        },
    }


def make_pod(name, namespace="default", node=None, containers=None, init_containers=None,
             overhead=None, phase="Running"):
    """Pod record; containers are (name, requests, limits) tuples"""
    spec = {
        "containers": [
            {"name": c_name, "resources": {"requests": dict(requests or {}), "limits": dict(limits or {})}}
            for c_name, requests, limits in (containers or [])
        ],
    }
    if node:
        spec["nodeName"] = node
    if init_containers:
        spec["initContainers"] = [
            {"name": c_name, "resources": {"requests": dict(requests or {}), "limits": dict(limits or {})}}
            for c_name, requests, limits in init_containers
        ]
    if overhead:
        spec["overhead"] = dict(overhead)
    return {
        "metadata": {"name": name, "namespace": namespace},
        "spec": spec,
        "status": {"phase": phase},
    }


@pytest.fixture
def two_nodes():
    """node-a with 4 cores, node-b with 2 cores"""
    return [
        make_node("node-a", {"cpu": "4", "memory": "8Gi", "pods": "110"}),
        make_node("node-b", {"cpu": "2000m", "memory": "4Gi", "pods": "110"}),
    ]


@pytest.fixture
def two_pods():
    """One pod on node-a requesting a core, one on node-b without cpu request"""
    return [
        make_pod("api-server", "web", "node-a", [("app", {"cpu": "1000m", "memory": "512Mi"}, {"memory": "1Gi"})]),
        make_pod("worker", "batch", "node-b", [("main", {"memory": "256Mi"}, None)]),
    ]


@pytest.fixture
def sample_usage():
    """Usage samples keyed by (namespace, pod, container)"""
    return {
        ("web", "api-server", "app"): {"cpu": "250m", "memory": "300Mi"},
        ("batch", "worker", "main"): {"cpu": "100m", "memory": "128Mi"},
    }


@pytest.fixture
def mock_prometheus_response():
    """Sample Prometheus API response"""
    return {
        "status": "success",
        "data": {
            "resultType": "vector",
            "result": [
                {
                    "metric": {"namespace": "web", "pod": "api-server", "container": "app"},
                    "value": [1704369600, "0.25"]
                }
            ]
        }
    }


@pytest.fixture
def sample_report_dict():
    """Saved JSON report as written by orchestrator --save"""
    return {
        "generated_at": "2026-01-04T10:00:00+00:00",
        "cluster_name": "default",
        "grouping": ["node"],
        "kinds": ["cpu"],
        "usage_available": False,
        "skipped_count": 0,
        "diagnostics": [],
        "tree": {
            "label": "cluster",
            "level": "cluster",
            "path": [],
            "resources": {
                "cpu": {
                    "values": {
                        "capacity": {"text": "4", "value": 4.0},
                        "allocatable": {"text": "4", "value": 4.0},
                        "requested": {"text": "1", "value": 1.0},
                        "limit": None,
                        "used": None,
                    },
                    "free": {"text": "3", "value": 3.0},
                    "ratios": {"requested/allocatable": 0.25, "limit/allocatable": 0.0},
                }
            },
            "children": [
                {
                    "label": "node-a",
                    "level": "node",
                    "path": ["node-a"],
                    "resources": {},
                    "children": [],
                }
            ],
        },
    }
