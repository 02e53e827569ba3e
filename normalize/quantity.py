"""
Resource quantity normalization.

Parses Kubernetes quantity text ("250m", "1.5Gi", "2e3", "4") into an exact
integer expressed in the smallest addressable unit of the resource kind:

- cpu:            milli-cores
- byte-sized:     bytes (memory, ephemeral-storage, storage, hugepages-*)
- everything else: whole units (pods, nvidia.com/gpu, ...)

Values are integers so thousands of facts can be summed without drift.
"""
import functools
import re
from dataclasses import dataclass
from decimal import Decimal, DecimalException, ROUND_CEILING, localcontext
from typing import Optional


class MalformedQuantityError(ValueError):
    """Raised when quantity text cannot be parsed for its resource kind"""

    def __init__(self, raw, kind: str, reason: str = "unrecognized quantity"):
        self.raw = raw
        self.kind = kind
        self.reason = reason
        super().__init__(f"{reason}: {raw!r} for resource '{kind}'")


class IncompatibleKindError(TypeError):
    """Raised on arithmetic between quantities of different resource kinds"""

    def __init__(self, left: str, right: str):
        self.left = left
        self.right = right
        super().__init__(f"cannot combine quantities of '{left}' and '{right}'")


@dataclass(frozen=True)
class UnitFamily:
    name: str
    # smallest units per display unit (1000 milli-cores per core)
    scale: int
    # whether values finer than the smallest unit are rounded up or rejected
    round_up_fraction: bool


CPU = UnitFamily("cpu", 1000, True)
BYTES = UnitFamily("bytes", 1, True)
COUNT = UnitFamily("count", 1, False)

BYTE_KINDS = ("memory", "ephemeral-storage", "storage")


def unit_family(kind: str) -> UnitFamily:
    """Resolve the unit family of a resource kind from its name"""
    if kind == "cpu":
        return CPU
    if kind in BYTE_KINDS or kind.startswith("hugepages-"):
        return BYTES
    return COUNT


_BINARY_SUFFIXES = {"Ki": 1, "Mi": 2, "Gi": 3, "Ti": 4, "Pi": 5, "Ei": 6}
_DECIMAL_SUFFIXES = {"n": -9, "u": -6, "m": -3, "k": 3, "M": 6, "G": 9, "T": 12, "P": 15, "E": 18}

_QUANTITY_RE = re.compile(
    r"^(?P<sign>[+-]?)"
    r"(?P<number>\d+(?:\.\d*)?|\.\d+)"
    r"(?P<suffix>[eE][+-]?\d+|Ki|Mi|Gi|Ti|Pi|Ei|[numkMGTPE])?$"
)


def _multiplier(suffix: Optional[str]) -> Decimal:
    if not suffix:
        return Decimal(1)
    if suffix in _BINARY_SUFFIXES:
        return Decimal(1024) ** _BINARY_SUFFIXES[suffix]
    if suffix in _DECIMAL_SUFFIXES:
        return Decimal(10) ** _DECIMAL_SUFFIXES[suffix]
    # decimal exponent: e3, E-2, e+08
    return Decimal(10) ** int(suffix[1:])


@functools.total_ordering
@dataclass(frozen=True)
class Quantity:
    """An exact amount of one resource kind, in the kind's smallest unit"""
    kind: str
    value: int

    @property
    def family(self) -> UnitFamily:
        return unit_family(self.kind)

    def is_zero(self) -> bool:
        return self.value == 0

    def __add__(self, other: "Quantity") -> "Quantity":
        return add(self, other)

    def __sub__(self, other: "Quantity") -> "Quantity":
        return subtract(self, other)

    def __lt__(self, other: "Quantity") -> bool:
        return compare(self, other) < 0

    def __str__(self) -> str:
        return format_quantity(self)


def zero(kind: str) -> Quantity:
    return Quantity(kind, 0)


def parse(raw, kind: str) -> Quantity:
    """Parse quantity text for a resource kind.

    Raises:
        MalformedQuantityError: text is not `<number><suffix?>`, is negative,
            or is fractional for a whole-unit kind
    """
    if raw is None:
        raise MalformedQuantityError(raw, kind, "missing quantity")
    text = str(raw).strip()
    match = _QUANTITY_RE.match(text)
    if not match:
        raise MalformedQuantityError(raw, kind)
    if match.group("sign") == "-" and Decimal(match.group("number")) != 0:
        raise MalformedQuantityError(raw, kind, "negative quantity")

    family = unit_family(kind)
    with localcontext() as ctx:
        ctx.prec = 60
        try:
            amount = Decimal(match.group("number")) * _multiplier(match.group("suffix")) * family.scale
        except (DecimalException, ValueError):
            raise MalformedQuantityError(raw, kind, "quantity out of range")
        whole = amount.to_integral_value(rounding=ROUND_CEILING)
    if whole != amount and not family.round_up_fraction:
        raise MalformedQuantityError(raw, kind, "fractional quantity")
    return Quantity(kind, int(whole))


def _check_kinds(a: Quantity, b: Quantity) -> None:
    if a.kind != b.kind:
        raise IncompatibleKindError(a.kind, b.kind)


def add(a: Quantity, b: Quantity) -> Quantity:
    _check_kinds(a, b)
    return Quantity(a.kind, a.value + b.value)


def subtract(a: Quantity, b: Quantity) -> Quantity:
    _check_kinds(a, b)
    return Quantity(a.kind, a.value - b.value)


def compare(a: Quantity, b: Quantity) -> int:
    """Return -1, 0 or 1"""
    _check_kinds(a, b)
    return (a.value > b.value) - (a.value < b.value)


def format_quantity(q: Quantity) -> str:
    """Canonical text form; parse(format_quantity(q), q.kind) == q for non-negative q.

    A negative q (e.g. from subtract) formats with a leading "-", which parse rejects.
    """
    family = q.family
    v = q.value
    if family is CPU:
        return str(v // 1000) if v % 1000 == 0 else f"{v}m"
    if family is BYTES and v:
        for suffix, power in sorted(_BINARY_SUFFIXES.items(), key=lambda kv: -kv[1]):
            if v % (1024 ** power) == 0:
                return f"{v // 1024 ** power}{suffix}"
        for suffix, power in sorted(_DECIMAL_SUFFIXES.items(), key=lambda kv: -kv[1]):
            if power > 0 and v % (10 ** power) == 0:
                return f"{v // 10 ** power}{suffix}"
    return str(v)


def _trim(number: float) -> str:
    text = f"{number:.2f}"
    return text.rstrip("0").rstrip(".") if "." in text else text


def format_human(q: Quantity) -> str:
    """Short display text: cores for cpu, binary suffixes for bytes"""
    family = q.family
    if family is CPU:
        return _trim(q.value / 1000)
    if family is BYTES:
        size = float(q.value)
        suffix = ""
        for candidate in ("Ki", "Mi", "Gi", "Ti", "Pi", "Ei"):
            if size < 1024:
                break
            size /= 1024
            suffix = candidate
        return f"{_trim(size)}{suffix}"
    return str(q.value)


def to_float(q: Quantity) -> float:
    """Value in display units (cores, bytes, units)"""
    return q.value / q.family.scale
