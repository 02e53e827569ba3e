"""
Hierarchy aggregation - rolls facts up into a tree of aggregate nodes.

The grouping order decides the tree shape, e.g. [node, namespace, pod] gives
cluster -> node -> namespace -> pod. Each fact walks down the levels of the
grouping and is attached to the deepest node it has a segment for, so node
allocatable stays at node level (or at the root when nodes are not part of the
grouping) and is never split across namespaces or pods.

Every cell of an accumulator is tri-state: a Quantity (possibly zero) or None
for "undefined". None never turns into zero while summing.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from analysis.facts import Category, Diagnostic, Fact
from analysis.ratios import (
    CLUSTER, CONTAINER, NAMESPACE, NODE, POD, RESOURCE,
    DEFAULT_PAIRS, RatioPair, RatioSelection, default_selection, ratio,
)
from normalize.quantity import IncompatibleKindError, Quantity, add, zero

logger = logging.getLogger(__name__)

GROUPABLE_LEVELS = (RESOURCE, NODE, NAMESPACE, POD, CONTAINER)
DEFAULT_GROUPING = (RESOURCE, NODE, POD)


def validate_grouping(order: Sequence[str]) -> None:
    unknown = [level for level in order if level not in GROUPABLE_LEVELS]
    if unknown:
        raise ValueError(
            f"Unknown grouping level(s) {unknown}, expected any of {list(GROUPABLE_LEVELS)}"
        )
    if len(set(order)) != len(order):
        raise ValueError(f"Grouping levels must not repeat: {list(order)}")


def parse_grouping(text: str) -> List[str]:
    """'resource,node,pod' -> ['resource', 'node', 'pod']"""
    order = [part.strip().lower() for part in (text or '').split(',') if part.strip()]
    validate_grouping(order)
    return order


@dataclass
class Accumulator:
    """Per-kind sums, free amount and ratios at one tree node"""
    kind: str
    values: Dict[Category, Optional[Quantity]] = field(default_factory=dict)
    ratios: Dict[RatioPair, Optional[float]] = field(default_factory=dict)
    free: Optional[Quantity] = None

    def get(self, category: Category) -> Optional[Quantity]:
        return self.values.get(category)

    def ratio(self, pair: RatioPair) -> Optional[float]:
        return self.ratios.get(pair)

    def is_empty(self) -> bool:
        return all(v is None for v in self.values.values())


@dataclass
class AggregateNode:
    label: str
    level: str
    path: Tuple[str, ...]
    children: Tuple["AggregateNode", ...] = ()
    accumulators: Dict[str, Accumulator] = field(default_factory=dict)

    @property
    def depth(self) -> int:
        return len(self.path)

    def accumulator(self, kind: str) -> Accumulator:
        """Accumulator for kind; all cells undefined when the kind never occurs here"""
        acc = self.accumulators.get(kind)
        if acc is None:
            acc = Accumulator(kind, {c: None for c in Category})
        return acc

    def child(self, label: str) -> Optional["AggregateNode"]:
        for c in self.children:
            if c.label == label:
                return c
        return None

    def find(self, *labels: str) -> Optional["AggregateNode"]:
        node = self
        for label in labels:
            node = node.child(label)
            if node is None:
                return None
        return node

    def walk(self) -> Iterator["AggregateNode"]:
        """Pre-order traversal, children in label order"""
        yield self
        for c in self.children:
            yield from c.walk()


@dataclass
class AllocationReport:
    root: AggregateNode
    grouping: List[str]
    kinds: List[str]
    diagnostics: List[Diagnostic] = field(default_factory=list)
    usage_available: bool = False

    @property
    def skipped_count(self) -> int:
        return len(self.diagnostics)


class _Draft:
    __slots__ = ('label', 'level', 'path', 'children', 'direct')

    def __init__(self, label: str, level: str, path: Tuple[str, ...]):
        self.label = label
        self.level = level
        self.path = path
        self.children: Dict[str, "_Draft"] = {}
        self.direct: Dict[str, Dict[Category, Quantity]] = {}


def _segment(fact: Fact, level: str, qualify_pod: bool) -> Optional[str]:
    loc = fact.location
    if level == RESOURCE:
        return fact.kind
    if level == NODE:
        return loc.node
    if level == NAMESPACE:
        return loc.namespace
    if level == POD:
        if loc.pod is None:
            return None
        if qualify_pod and loc.namespace:
            return f"{loc.namespace}/{loc.pod}"
        return loc.pod
    if level == CONTAINER:
        return loc.container
    raise ValueError(f"Unknown grouping level '{level}'")


def _merge(draft: _Draft, fact: Fact) -> None:
    if fact.quantity.kind != fact.kind:
        raise IncompatibleKindError(fact.kind, fact.quantity.kind)
    cells = draft.direct.setdefault(fact.kind, {})
    current = cells.get(fact.category)
    cells[fact.category] = fact.quantity if current is None else add(current, fact.quantity)


def _free(values: Dict[Category, Optional[Quantity]], kind: str) -> Optional[Quantity]:
    allocatable = values.get(Category.ALLOCATABLE)
    if allocatable is None:
        return None
    reserved = max(values.get(Category.REQUESTED) or zero(kind), values.get(Category.LIMIT) or zero(kind))
    return allocatable - reserved if allocatable > reserved else zero(kind)


def _finish(draft: _Draft, selection: RatioSelection) -> AggregateNode:
    children = tuple(
        _finish(c, selection) for c in sorted(draft.children.values(), key=lambda d: d.label)
    )
    kinds = set(draft.direct)
    for c in children:
        kinds.update(c.accumulators)

    pairs = selection.get(draft.level, DEFAULT_PAIRS)
    accumulators: Dict[str, Accumulator] = {}
    for kind in sorted(kinds):
        values: Dict[Category, Optional[Quantity]] = {}
        for category in Category:
            total = draft.direct.get(kind, {}).get(category)
            for c in children:
                acc = c.accumulators.get(kind)
                v = acc.values.get(category) if acc else None
                if v is not None:
                    total = v if total is None else add(total, v)
            values[category] = total
        accumulators[kind] = Accumulator(
            kind=kind,
            values=values,
            ratios={pair: ratio(values[pair.numerator], values[pair.denominator]) for pair in pairs},
            free=_free(values, kind),
        )
    return AggregateNode(draft.label, draft.level, draft.path, children, accumulators)


def build_tree(
    facts: Iterable[Fact],
    grouping_order: Sequence[str],
    ratios: Optional[RatioSelection] = None,
) -> AggregateNode:
    """Roll facts up into a tree rooted at the cluster node.

    Raises:
        ValueError: invalid grouping order
        IncompatibleKindError: a fact's quantity belongs to another kind
    """
    grouping = list(grouping_order)
    validate_grouping(grouping)
    qualify_pod = POD in grouping and NAMESPACE not in grouping[:grouping.index(POD)]

    root = _Draft(CLUSTER, CLUSTER, ())
    index: Dict[Tuple[str, ...], _Draft] = {(): root}
    for fact in facts:
        node = root
        for level in grouping:
            segment = _segment(fact, level, qualify_pod)
            if segment is None:
                break
            path = node.path + (segment,)
            child = index.get(path)
            if child is None:
                child = _Draft(segment, level, path)
                index[path] = child
                node.children[segment] = child
            node = child
        _merge(node, fact)

    return _finish(root, ratios if ratios is not None else default_selection())


def aggregate(
    facts: Iterable[Fact],
    grouping_order: Sequence[str] = DEFAULT_GROUPING,
    ratios: Optional[RatioSelection] = None,
    kinds: Optional[Iterable[str]] = None,
    diagnostics: Optional[List[Diagnostic]] = None,
    usage_available: bool = False,
) -> AllocationReport:
    """Build the report model for a fact set.

    Args:
        facts: collected facts
        grouping_order: levels to roll up through, outermost first
        ratios: level -> ratio pairs to compute (all pairs everywhere by default)
        kinds: kinds to report even when no fact mentions them
        diagnostics: facts dropped during collection, carried into the report
        usage_available: whether used facts were collected
    """
    root = build_tree(facts, grouping_order, ratios)
    all_kinds = set(root.accumulators)
    all_kinds.update(kinds or [])
    logger.info(
        f"Aggregated {len(all_kinds)} resource kind(s) "
        f"grouped by {','.join(grouping_order) or 'cluster'}"
    )
    return AllocationReport(
        root=root,
        grouping=list(grouping_order),
        kinds=sorted(all_kinds),
        diagnostics=list(diagnostics or []),
        usage_available=usage_available,
    )
