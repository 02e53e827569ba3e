"""
Resource fact collection - flattens node, pod and usage records into facts.

A fact is one (location, resource kind, category, quantity) tuple. Node records
contribute capacity/allocatable facts, pod containers contribute
requested/limit facts and usage samples contribute used facts.

Inputs are plain dicts in the Kubernetes API JSON shape. Unparsable quantity
text never aborts collection: the fact is dropped and a Diagnostic recorded.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

from normalize.quantity import MalformedQuantityError, Quantity, parse

logger = logging.getLogger(__name__)

UNSCHEDULED_NODE = "<unscheduled>"
UNKNOWN_NODE = "<unknown>"
INIT_CONTAINER = "<init>"
OVERHEAD_CONTAINER = "<overhead>"
POD_COUNT_KIND = "pods"

TERMINATED_PHASES = ("Succeeded", "Failed")


class Category(str, Enum):
    CAPACITY = "capacity"
    ALLOCATABLE = "allocatable"
    REQUESTED = "requested"
    LIMIT = "limit"
    USED = "used"


class Location(NamedTuple):
    node: Optional[str] = None
    namespace: Optional[str] = None
    pod: Optional[str] = None
    container: Optional[str] = None

    def segments(self) -> List[str]:
        return [s for s in self if s is not None]


@dataclass(frozen=True)
class Fact:
    location: Location
    kind: str
    category: Category
    quantity: Quantity


@dataclass(frozen=True)
class Diagnostic:
    """A fact dropped during collection"""
    location: Location
    kind: str
    category: Category
    raw: Any
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'location': '/'.join(self.location.segments()),
            'kind': self.kind,
            'category': self.category.value,
            'raw': None if self.raw is None else str(self.raw),
            'message': self.message,
        }


class CollectedFacts(NamedTuple):
    facts: List[Fact]
    diagnostics: List[Diagnostic]


UsageSamples = Dict[Tuple[str, str, str], Dict[str, Any]]


class _Collector:
    def __init__(self):
        self.facts: List[Fact] = []
        self.diagnostics: List[Diagnostic] = []

    def parse(self, location: Location, kind: str, category: Category, raw) -> Optional[Quantity]:
        try:
            return parse(raw, kind)
        except MalformedQuantityError as e:
            logger.warning(f"Skipping {category.value} {kind} at {'/'.join(location.segments())}: {e}")
            self.diagnostics.append(Diagnostic(location, kind, category, raw, str(e)))
            return None

    def emit(self, location: Location, category: Category, quantities: Dict[str, Quantity]) -> None:
        for kind in sorted(quantities):
            self.facts.append(Fact(location, kind, category, quantities[kind]))

    def emit_raw(self, location: Location, category: Category, resource_list: Optional[Dict[str, Any]]) -> None:
        for kind, raw in sorted((resource_list or {}).items()):
            qty = self.parse(location, kind, category, raw)
            if qty is not None:
                self.facts.append(Fact(location, kind, category, qty))


def _name(record: Dict[str, Any]) -> Optional[str]:
    return (record.get('metadata') or {}).get('name')


def _namespace(record: Dict[str, Any]) -> str:
    return (record.get('metadata') or {}).get('namespace') or 'default'


def _resources(container: Dict[str, Any], field: str) -> Dict[str, Any]:
    return (container.get('resources') or {}).get(field) or {}


def _collect_nodes(collector: _Collector, nodes: Iterable[Dict[str, Any]]) -> None:
    for node in nodes:
        name = _name(node)
        if not name:
            logger.warning("Skipping node record without metadata.name")
            continue
        status = node.get('status') or {}
        location = Location(node=name)
        collector.emit_raw(location, Category.CAPACITY, status.get('capacity'))
        collector.emit_raw(location, Category.ALLOCATABLE, status.get('allocatable'))


def _resolve_node(pod: Dict[str, Any], known_nodes: set) -> str:
    node_name = (pod.get('spec') or {}).get('nodeName')
    if not node_name:
        return UNSCHEDULED_NODE
    if node_name not in known_nodes:
        logger.warning(
            f"Pod {_namespace(pod)}/{_name(pod)} references node '{node_name}' "
            f"missing from the node list, reporting it under {UNKNOWN_NODE}"
        )
        return UNKNOWN_NODE
    return node_name


def _init_excess(
    collector: _Collector,
    pod_location: Location,
    category: Category,
    field: str,
    app_totals: Dict[str, Quantity],
    init_containers: List[Dict[str, Any]],
) -> Dict[str, Quantity]:
    """Amount by which the largest init container exceeds the app containers.

    The effective pod value of a kind is max(sum(app), max(init)); the excess
    is reported on a synthetic container so container facts still add up.
    """
    init_max: Dict[str, Quantity] = {}
    for container in init_containers:
        location = pod_location._replace(container=container.get('name'))
        for kind, raw in _resources(container, field).items():
            qty = collector.parse(location, kind, category, raw)
            if qty is None:
                continue
            if kind not in init_max or qty > init_max[kind]:
                init_max[kind] = qty
    excess = {}
    for kind, qty in init_max.items():
        app = app_totals.get(kind)
        if app is None:
            excess[kind] = qty
        elif qty > app:
            excess[kind] = qty - app
    return excess


def _collect_pod(collector: _Collector, pod: Dict[str, Any], node_name: str, count_pods: bool) -> None:
    spec = pod.get('spec') or {}
    pod_location = Location(node=node_name, namespace=_namespace(pod), pod=_name(pod))

    for category, field in ((Category.REQUESTED, 'requests'), (Category.LIMIT, 'limits')):
        app_totals: Dict[str, Quantity] = {}
        for container in spec.get('containers') or []:
            location = pod_location._replace(container=container.get('name'))
            for kind, raw in sorted(_resources(container, field).items()):
                qty = collector.parse(location, kind, category, raw)
                if qty is None:
                    continue
                collector.facts.append(Fact(location, kind, category, qty))
                app_totals[kind] = app_totals[kind] + qty if kind in app_totals else qty

        excess = _init_excess(collector, pod_location, category, field, app_totals, spec.get('initContainers') or [])
        collector.emit(pod_location._replace(container=INIT_CONTAINER), category, excess)
        collector.emit_raw(pod_location._replace(container=OVERHEAD_CONTAINER), category, spec.get('overhead'))

        if count_pods:
            collector.facts.append(Fact(pod_location, POD_COUNT_KIND, category, Quantity(POD_COUNT_KIND, 1)))


def collect(
    nodes: Iterable[Dict[str, Any]],
    pods: Iterable[Dict[str, Any]],
    usage: Optional[UsageSamples] = None,
    count_pods: bool = True,
) -> CollectedFacts:
    """Flatten a cluster snapshot into facts.

    Args:
        nodes: node records (metadata.name, status.capacity, status.allocatable)
        pods: pod records (metadata, spec.nodeName, spec.containers, ...)
        usage: optional (namespace, pod, container) -> {kind: quantity text}
        count_pods: emit a `pods` = 1 request/limit per pod

    Returns:
        CollectedFacts(facts, diagnostics)
    """
    collector = _Collector()
    nodes = list(nodes)
    _collect_nodes(collector, nodes)
    known_nodes = {_name(n) for n in nodes}

    pod_nodes: Dict[Tuple[str, str], str] = {}
    skipped = 0
    for pod in pods:
        phase = (pod.get('status') or {}).get('phase')
        if phase in TERMINATED_PHASES:
            skipped += 1
            continue
        node_name = _resolve_node(pod, known_nodes)
        pod_nodes[(_namespace(pod), _name(pod))] = node_name
        _collect_pod(collector, pod, node_name, count_pods)
    if skipped:
        logger.debug(f"Ignored {skipped} terminated pod(s)")

    for (namespace, pod_name, container), samples in sorted((usage or {}).items()):
        node_name = pod_nodes.get((namespace, pod_name), UNKNOWN_NODE)
        location = Location(node=node_name, namespace=namespace, pod=pod_name, container=container)
        collector.emit_raw(location, Category.USED, samples)

    logger.info(
        f"Collected {len(collector.facts)} facts from {len(nodes)} nodes and {len(pod_nodes)} pods "
        f"({len(collector.diagnostics)} skipped)"
    )
    return CollectedFacts(collector.facts, collector.diagnostics)


def accept_kind(kind: str, names: Optional[List[str]]) -> bool:
    """True when no filter is set or any filter fragment is part of the kind"""
    return not names or any(name in kind for name in names)


def select_kinds(facts: Iterable[Fact], names: Optional[List[str]]) -> List[Fact]:
    return [f for f in facts if accept_kind(f.kind, names)]
