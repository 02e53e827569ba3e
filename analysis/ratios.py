"""
Ratio policy for derived values.

A ratio compares two categories of the same resource kind at one tree node,
e.g. requested/allocatable. Undefined and zero denominators make a ratio
"not applicable" (None), never 0 or infinity. An undefined numerator with a
usable denominator counts as zero: no requests is 0% of allocatable.

Allocatable and capacity only exist at node level and above, so ratios using
them as denominator are meaningless for namespaces, pods and containers.
"""
from typing import Dict, Iterable, List, NamedTuple, Optional

from analysis.facts import Category
from normalize.quantity import Quantity, IncompatibleKindError

CLUSTER = "cluster"
RESOURCE = "resource"
NODE = "node"
NAMESPACE = "namespace"
POD = "pod"
CONTAINER = "container"

LEVELS = (CLUSTER, RESOURCE, NODE, NAMESPACE, POD, CONTAINER)

# levels whose nodes can carry node-scoped categories (allocatable, capacity)
NODE_SCOPED_LEVELS = (CLUSTER, RESOURCE, NODE)
NODE_SCOPED_CATEGORIES = (Category.ALLOCATABLE, Category.CAPACITY)


class RatioPair(NamedTuple):
    numerator: Category
    denominator: Category

    @property
    def name(self) -> str:
        return f"{self.numerator.value}/{self.denominator.value}"


REQUESTED_OF_ALLOCATABLE = RatioPair(Category.REQUESTED, Category.ALLOCATABLE)
LIMIT_OF_ALLOCATABLE = RatioPair(Category.LIMIT, Category.ALLOCATABLE)
USED_OF_ALLOCATABLE = RatioPair(Category.USED, Category.ALLOCATABLE)
USED_OF_REQUESTED = RatioPair(Category.USED, Category.REQUESTED)
USED_OF_LIMIT = RatioPair(Category.USED, Category.LIMIT)

DEFAULT_PAIRS = (
    REQUESTED_OF_ALLOCATABLE,
    LIMIT_OF_ALLOCATABLE,
    USED_OF_ALLOCATABLE,
    USED_OF_REQUESTED,
    USED_OF_LIMIT,
)

RatioSelection = Dict[str, List[RatioPair]]


def ratio(numerator: Optional[Quantity], denominator: Optional[Quantity]) -> Optional[float]:
    """numerator / denominator, or None when not applicable"""
    if denominator is None or denominator.is_zero():
        return None
    if numerator is None:
        return 0.0
    if numerator.kind != denominator.kind:
        raise IncompatibleKindError(numerator.kind, denominator.kind)
    return numerator.value / denominator.value


def percent(value: Optional[float], not_applicable: str = "__") -> str:
    if value is None:
        return not_applicable
    return f"{value * 100:.0f}%"


def meaningful_levels(pair: RatioPair) -> tuple:
    """Levels at which the pair can produce a value"""
    if pair.denominator in NODE_SCOPED_CATEGORIES or pair.numerator in NODE_SCOPED_CATEGORIES:
        return NODE_SCOPED_LEVELS
    return LEVELS


def parse_pair(text: str) -> RatioPair:
    """'requested/allocatable' -> RatioPair"""
    try:
        numerator, denominator = (part.strip() for part in text.split('/'))
        return RatioPair(Category(numerator), Category(denominator))
    except ValueError:
        raise ValueError(f"Invalid ratio '{text}', expected '<category>/<category>'")


def default_selection() -> RatioSelection:
    return {level: list(DEFAULT_PAIRS) for level in LEVELS}


def validate_selection(selection: RatioSelection) -> None:
    """Reject pairs requested at levels where they cannot be meaningful"""
    errors = []
    for level, pairs in selection.items():
        if level not in LEVELS:
            errors.append(f"unknown level '{level}'")
            continue
        for pair in pairs:
            if level not in meaningful_levels(pair):
                errors.append(f"{pair.name} is not meaningful at {level} level")
    if errors:
        raise ValueError("Invalid ratio selection: " + "; ".join(errors))


def build_selection(config: Optional[Dict[str, Iterable[str]]]) -> RatioSelection:
    """Build a selection from {level: ['requested/allocatable', ...]}.

    Levels missing from the mapping keep the default pairs.
    """
    selection = default_selection()
    for level, names in (config or {}).items():
        selection[level] = [parse_pair(name) for name in names or []]
    validate_selection({level: pairs for level, pairs in selection.items() if level in (config or {})})
    return selection
