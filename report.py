"""
Report projection - turns an AllocationReport into a tree table, CSV or JSON.

Table cells follow "(<pct>%) <value>", where the percentage is the ratio to
allocatable at that node. Undefined values render as "__", so a namespace with
no GPU requests is told apart from one requesting 0 GPUs.

Rows with no usage and nothing (or only explicit zeros) requested, limited or
allocatable are hidden from the table unless show_zero is set (CLI ``-z``).
CSV and JSON output always carry them.
"""
import csv
import io
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import tabulate as tabulate_module
from tabulate import tabulate

from analysis.aggregation import AggregateNode, Accumulator, AllocationReport
from analysis.facts import Category
from analysis.ratios import (
    CLUSTER, RESOURCE,
    LIMIT_OF_ALLOCATABLE, REQUESTED_OF_ALLOCATABLE, USED_OF_ALLOCATABLE,
    percent,
)
from normalize.quantity import Quantity, format_human, format_quantity, to_float

NOT_APPLICABLE = "__"

# (header, category, ratio shown next to the value)
_COLUMNS = (
    ("Utilization", Category.USED, USED_OF_ALLOCATABLE),
    ("Requested", Category.REQUESTED, REQUESTED_OF_ALLOCATABLE),
    ("Limit", Category.LIMIT, LIMIT_OF_ALLOCATABLE),
    ("Allocatable", Category.ALLOCATABLE, None),
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_empty(q: Optional[Quantity]) -> bool:
    return q is None or q.is_zero()


def is_zero_row(acc: Accumulator) -> bool:
    """No usage and nothing requested, limited or allocatable"""
    return (
        acc.get(Category.USED) is None
        and _is_empty(acc.get(Category.REQUESTED))
        and _is_empty(acc.get(Category.LIMIT))
        and _is_empty(acc.get(Category.ALLOCATABLE))
    )


def _show_root(report: AllocationReport) -> bool:
    # resource rows already are the cluster totals
    return not report.grouping or report.grouping[0] != RESOURCE


def _row_kinds(report: AllocationReport, node: AggregateNode, show_zero: bool) -> List[str]:
    if node.level == CLUSTER:
        return list(report.kinds)
    if node.level == RESOURCE and not node.accumulators:
        # requested kind nothing in the cluster carries
        return [node.label]
    kinds = sorted(node.accumulators)
    if not show_zero:
        kinds = [k for k in kinds if not is_zero_row(node.accumulators[k])]
    return kinds


def _visible(report: AllocationReport, node: AggregateNode, show_zero: bool) -> List[Any]:
    """Pre-order (node, kept children) pairs, dropping subtrees with no rows"""
    children = []
    for c in node.children:
        kept = _visible(report, c, show_zero)
        if kept:
            children.append(kept)
    if not children and not _row_kinds(report, node, show_zero):
        return []
    return [node, children]


def _tree_lines(entry, prefix: str = "", last: bool = True, top: bool = True):
    """Yield (label prefix, continuation prefix, node) with box-drawing guides"""
    node, children = entry
    if top:
        yield "", "", node
        child_prefix = ""
    else:
        yield prefix + ("└─ " if last else "├─ "), prefix + ("   " if last else "│  "), node
        child_prefix = prefix + ("   " if last else "│  ")
    for i, child in enumerate(children):
        yield from _tree_lines(child, child_prefix, i == len(children) - 1, False)


def _cell(acc: Accumulator, category: Category, pair) -> str:
    value = acc.get(category)
    text = format_human(value) if value is not None else NOT_APPLICABLE
    r = acc.ratio(pair) if pair is not None else None
    if r is None:
        return text
    return f"({percent(r)}) {text}"


def table_rows(report: AllocationReport, show_zero: bool = False) -> Tuple[List[str], List[List[str]]]:
    """Headers and rows of the tree table"""
    show_kind = RESOURCE not in report.grouping
    columns = [c for c in _COLUMNS if report.usage_available or c[1] != Category.USED]
    headers = ["Resource"] + (["Kind"] if show_kind else []) + [c[0] for c in columns] + ["Free"]

    rows: List[List[str]] = []
    if _show_root(report):
        roots = [_visible(report, report.root, show_zero) or [report.root, []]]
    else:
        roots = []
        for kind in report.kinds:
            child = report.root.child(kind)
            if child is None:
                roots.append([AggregateNode(kind, RESOURCE, (kind,)), []])
                continue
            entry = _visible(report, child, show_zero)
            if entry:
                roots.append(entry)

    for entry in roots:
        for label_prefix, cont_prefix, node in _tree_lines(entry):
            for i, kind in enumerate(_row_kinds(report, node, show_zero)):
                acc = node.accumulator(kind)
                label = f"{label_prefix}{node.label}" if i == 0 else cont_prefix
                row = [label] + ([kind] if show_kind else [])
                row += [_cell(acc, category, pair) for _, category, pair in columns]
                row.append(format_human(acc.free) if acc.free is not None else NOT_APPLICABLE)
                rows.append(row)
    return headers, rows


def render_table(report: AllocationReport, show_zero: bool = False) -> str:
    headers, rows = table_rows(report, show_zero)
    colalign = ["left"] * (2 if RESOURCE not in report.grouping else 1)
    colalign += ["right"] * (len(headers) - len(colalign))
    # tree guides start with spaces below a last child
    preserve = tabulate_module.PRESERVE_WHITESPACE
    tabulate_module.PRESERVE_WHITESPACE = True
    try:
        text = tabulate(rows, headers=headers, tablefmt="simple", colalign=colalign, disable_numparse=True)
    finally:
        tabulate_module.PRESERVE_WHITESPACE = preserve
    if report.diagnostics:
        lines = [text, "", f"{report.skipped_count} fact(s) skipped:"]
        for d in report.diagnostics:
            lines.append(f"  - {'/'.join(d.location.segments())} {d.kind} {d.category.value}: {d.message}")
        text = "\n".join(lines)
    return text


def _csv_value(q: Optional[Quantity]) -> str:
    return f"{to_float(q):.2f}" if q is not None else ""


def _csv_ratio(r: Optional[float]) -> str:
    return percent(r, "")


def render_csv(report: AllocationReport) -> str:
    """One line per (node, kind) below the cluster root"""
    out = io.StringIO()
    writer = csv.writer(out, lineterminator="\n")
    header = ["Date", "Kind"] + list(report.grouping) + ["Resource"]
    if report.usage_available:
        header += ["Utilization", "%Utilization"]
    header += ["Requested", "%Requested", "Limit", "%Limit", "Allocatable", "Free"]
    writer.writerow(header)

    date = _now_iso()
    for node in report.root.walk():
        if node.level == CLUSTER:
            continue
        for kind in sorted(node.accumulators):
            acc = node.accumulators[kind]
            row = [date, node.level]
            row += [node.path[i] if i < len(node.path) else "" for i in range(len(report.grouping))]
            row.append(kind)
            if report.usage_available:
                row += [_csv_value(acc.get(Category.USED)), _csv_ratio(acc.ratio(USED_OF_ALLOCATABLE))]
            row += [
                _csv_value(acc.get(Category.REQUESTED)), _csv_ratio(acc.ratio(REQUESTED_OF_ALLOCATABLE)),
                _csv_value(acc.get(Category.LIMIT)), _csv_ratio(acc.ratio(LIMIT_OF_ALLOCATABLE)),
                _csv_value(acc.get(Category.ALLOCATABLE)),
                _csv_value(acc.free),
            ]
            writer.writerow(row)
    return out.getvalue()


def _quantity_dict(q: Optional[Quantity]) -> Optional[Dict[str, Any]]:
    if q is None:
        return None
    return {'text': format_quantity(q), 'value': to_float(q)}


def accumulator_to_dict(acc: Accumulator) -> Dict[str, Any]:
    return {
        'values': {category.value: _quantity_dict(acc.get(category)) for category in Category},
        'free': _quantity_dict(acc.free),
        'ratios': {pair.name: r for pair, r in acc.ratios.items()},
    }


def node_to_dict(node: AggregateNode) -> Dict[str, Any]:
    return {
        'label': node.label,
        'level': node.level,
        'path': list(node.path),
        'resources': {kind: accumulator_to_dict(acc) for kind, acc in node.accumulators.items()},
        'children': [node_to_dict(c) for c in node.children],
    }


def report_to_dict(report: AllocationReport, cluster_name: Optional[str] = None) -> Dict[str, Any]:
    """JSON-serializable interchange document for the report"""
    return {
        'generated_at': _now_iso(),
        'cluster_name': cluster_name,
        'grouping': list(report.grouping),
        'kinds': list(report.kinds),
        'usage_available': report.usage_available,
        'skipped_count': report.skipped_count,
        'diagnostics': [d.to_dict() for d in report.diagnostics],
        'tree': node_to_dict(report.root),
    }
