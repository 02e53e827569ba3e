"""
Tests for resource fact collection
"""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.facts import (
    Category, Location,
    INIT_CONTAINER, OVERHEAD_CONTAINER, POD_COUNT_KIND, UNKNOWN_NODE, UNSCHEDULED_NODE,
    accept_kind, collect, select_kinds,
)
from normalize.quantity import Quantity
from conftest import make_node, make_pod


def _facts_for(facts, category, kind=None, container=None):
    return [
        f for f in facts
        if f.category == category
        and (kind is None or f.kind == kind)
        and (container is None or f.location.container == container)
    ]


class TestNodeFacts:
    """Tests for capacity and allocatable facts"""

    def test_emits_capacity_and_allocatable(self):
        nodes = [make_node("node-a", {"cpu": "3800m"}, capacity={"cpu": "4"})]
        result = collect(nodes, [], count_pods=False)

        capacity = _facts_for(result.facts, Category.CAPACITY, "cpu")
        allocatable = _facts_for(result.facts, Category.ALLOCATABLE, "cpu")
        assert capacity[0].quantity == Quantity("cpu", 4000)
        assert allocatable[0].quantity == Quantity("cpu", 3800)
        assert allocatable[0].location == Location(node="node-a")

    def test_extended_kinds_discovered(self):
        nodes = [make_node("gpu-1", {"cpu": "8", "vendor.com/gpu": "4"})]
        result = collect(nodes, [], count_pods=False)
        assert {f.kind for f in result.facts} == {"cpu", "vendor.com/gpu"}

    def test_node_without_name_skipped(self):
        result = collect([{"status": {"allocatable": {"cpu": "1"}}}], [])
        assert result.facts == []


class TestPodFacts:
    """Tests for requested and limit facts"""

    def test_requests_and_limits(self, two_nodes, two_pods):
        result = collect(two_nodes, two_pods, count_pods=False)

        requested = _facts_for(result.facts, Category.REQUESTED, "cpu")
        assert len(requested) == 1
        assert requested[0].location == Location("node-a", "web", "api-server", "app")
        assert requested[0].quantity.value == 1000

        limits = _facts_for(result.facts, Category.LIMIT, "memory")
        assert len(limits) == 1
        assert limits[0].location.pod == "api-server"

    def test_missing_request_emits_no_fact(self, two_nodes, two_pods):
        """worker declares no cpu request, so no cpu fact exists for it"""
        result = collect(two_nodes, two_pods, count_pods=False)
        worker_cpu = [f for f in result.facts if f.location.pod == "worker" and f.kind == "cpu"]
        assert worker_cpu == []

    def test_explicit_zero_request_is_kept(self):
        pods = [make_pod("p", node="n", containers=[("c", {"vendor.com/gpu": "0"}, None)])]
        result = collect([make_node("n", {"cpu": "1"})], pods, count_pods=False)
        gpu = _facts_for(result.facts, Category.REQUESTED, "vendor.com/gpu")
        assert len(gpu) == 1
        assert gpu[0].quantity.is_zero()

    def test_pod_count(self, two_nodes, two_pods):
        result = collect(two_nodes, two_pods)
        counted = _facts_for(result.facts, Category.REQUESTED, POD_COUNT_KIND)
        assert len(counted) == 2
        assert all(f.quantity.value == 1 for f in counted)
        assert all(f.location.container is None for f in counted)

    def test_terminated_pods_ignored(self, two_nodes):
        pods = [
            make_pod("done", node="node-a", containers=[("c", {"cpu": "1"}, None)], phase="Succeeded"),
            make_pod("crashed", node="node-a", containers=[("c", {"cpu": "1"}, None)], phase="Failed"),
        ]
        result = collect(two_nodes, pods)
        assert _facts_for(result.facts, Category.REQUESTED) == []


class TestNodeResolution:
    """Tests for pods whose node is missing or unknown"""

    def test_unscheduled_pod(self, two_nodes):
        pods = [make_pod("pending", containers=[("c", {"cpu": "1"}, None)], phase="Pending")]
        result = collect(two_nodes, pods, count_pods=False)
        requested = _facts_for(result.facts, Category.REQUESTED, "cpu")
        assert requested[0].location.node == UNSCHEDULED_NODE

    def test_unknown_node_does_not_abort(self, two_nodes):
        pods = [make_pod("orphan", node="node-z", containers=[("c", {"cpu": "1"}, None)])]
        result = collect(two_nodes, pods, count_pods=False)
        requested = _facts_for(result.facts, Category.REQUESTED, "cpu")
        assert requested[0].location.node == UNKNOWN_NODE
        assert result.diagnostics == []


class TestSyntheticContainers:
    """Tests for init container excess and pod overhead"""

    def test_init_excess_over_app_containers(self):
        pods = [make_pod(
            "p", node="n",
            containers=[("app", {"cpu": "500m"}, None)],
            init_containers=[("init-a", {"cpu": "2"}, None), ("init-b", {"cpu": "1"}, None)],
        )]
        result = collect([make_node("n", {"cpu": "4"})], pods, count_pods=False)

        init = _facts_for(result.facts, Category.REQUESTED, "cpu", INIT_CONTAINER)
        assert init[0].quantity.value == 1500
        total = sum(f.quantity.value for f in _facts_for(result.facts, Category.REQUESTED, "cpu"))
        assert total == 2000

    def test_init_below_app_containers_adds_nothing(self):
        pods = [make_pod(
            "p", node="n",
            containers=[("app", {"cpu": "2"}, None)],
            init_containers=[("init", {"cpu": "1"}, None)],
        )]
        result = collect([make_node("n", {"cpu": "4"})], pods, count_pods=False)
        assert _facts_for(result.facts, Category.REQUESTED, "cpu", INIT_CONTAINER) == []

    def test_init_only_kind(self):
        pods = [make_pod(
            "p", node="n",
            containers=[("app", {"cpu": "1"}, None)],
            init_containers=[("init", {"memory": "1Gi"}, None)],
        )]
        result = collect([make_node("n", {"cpu": "4"})], pods, count_pods=False)
        init = _facts_for(result.facts, Category.REQUESTED, "memory", INIT_CONTAINER)
        assert init[0].quantity.value == 1024 ** 3

    def test_overhead(self):
        pods = [make_pod("p", node="n", containers=[("app", {"cpu": "1"}, None)], overhead={"cpu": "250m"})]
        result = collect([make_node("n", {"cpu": "4"})], pods, count_pods=False)
        overhead = _facts_for(result.facts, Category.REQUESTED, "cpu", OVERHEAD_CONTAINER)
        assert overhead[0].quantity.value == 250
        assert _facts_for(result.facts, Category.LIMIT, "cpu", OVERHEAD_CONTAINER)[0].quantity.value == 250


class TestUsageFacts:
    """Tests for used facts"""

    def test_usage_attached_to_pod_node(self, two_nodes, two_pods, sample_usage):
        result = collect(two_nodes, two_pods, sample_usage, count_pods=False)
        used = _facts_for(result.facts, Category.USED, "cpu")
        by_pod = {f.location.pod: f for f in used}
        assert by_pod["api-server"].location.node == "node-a"
        assert by_pod["api-server"].quantity.value == 250
        assert by_pod["worker"].location.node == "node-b"

    def test_usage_for_unknown_pod(self, two_nodes):
        usage = {("web", "gone", "app"): {"cpu": "10m"}}
        result = collect(two_nodes, [], usage)
        assert _facts_for(result.facts, Category.USED)[0].location.node == UNKNOWN_NODE

    def test_no_usage_no_used_facts(self, two_nodes, two_pods):
        result = collect(two_nodes, two_pods)
        assert _facts_for(result.facts, Category.USED) == []


class TestDiagnostics:
    """Tests for malformed quantities"""

    def test_malformed_fact_dropped(self, two_nodes):
        pods = [make_pod("p", "web", "node-a", [("app", {"cpu": "100m", "memory": "5XB"}, None)])]
        result = collect(two_nodes, pods, count_pods=False)

        assert len(result.diagnostics) == 1
        d = result.diagnostics[0]
        assert d.kind == "memory"
        assert d.category == Category.REQUESTED
        assert d.raw == "5XB"
        assert d.location == Location("node-a", "web", "p", "app")
        assert len(_facts_for(result.facts, Category.REQUESTED, "cpu")) == 1
        assert _facts_for(result.facts, Category.REQUESTED, "memory") == []

    def test_diagnostic_to_dict(self, two_nodes):
        pods = [make_pod("p", "web", "node-a", [("app", {"memory": "5XB"}, None)])]
        d = collect(two_nodes, pods).diagnostics[0].to_dict()
        assert d["location"] == "node-a/web/p/app"
        assert d["raw"] == "5XB"
        assert d["category"] == "requested"


class TestKindFilter:
    """Tests for accept_kind and select_kinds"""

    def test_no_filter_accepts_all(self):
        assert accept_kind("cpu", None)
        assert accept_kind("cpu", [])

    def test_substring_match(self):
        assert accept_kind("nvidia.com/gpu", ["gpu"])
        assert not accept_kind("memory", ["gpu", "cpu"])

    def test_select_kinds(self, two_nodes, two_pods):
        facts = collect(two_nodes, two_pods).facts
        selected = select_kinds(facts, ["cpu"])
        assert selected
        assert {f.kind for f in selected} == {"cpu"}
