"""Orchestrator: fetch snapshot -> collect facts -> aggregate -> render (and optionally save JSON).
All defaults come from config.py; command line flags and the YAML report config override them.
"""
import argparse
import logging
import json
import os
import sys
import tempfile
from typing import Dict, List, Optional

import yaml

import config
from config import (
    setup_logging, validate_config, ConfigValidationError,
    get_config_value, get_report_output_path, load_report_config,
)
from metrics import discovery as discovery_mod
from metrics.discovery import MissingCollaboratorDataError, Snapshot
from analysis import facts as facts_mod
from analysis.aggregation import AllocationReport, aggregate, validate_grouping
from analysis.ratios import build_selection
from normalize.quantity import IncompatibleKindError
import report as report_mod

logger = logging.getLogger(__name__)


def _atomic_write(path: str, data: str) -> None:
    dirp = os.path.dirname(path) or '.'
    fd, tmp = tempfile.mkstemp(prefix='.tmp_report_', dir=dirp)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(data)
        # Atomic replace
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)


def build_report(
    snapshot: Snapshot,
    group_by: List[str],
    resource_names: Optional[List[str]] = None,
    ratios: Optional[Dict[str, List[str]]] = None,
    count_pods: bool = True,
) -> AllocationReport:
    """Pure part of a run: snapshot -> facts -> aggregate tree"""
    collected = facts_mod.collect(
        snapshot.nodes,
        snapshot.pods,
        snapshot.usage if snapshot.usage_available else None,
        count_pods=count_pods,
    )
    selected = facts_mod.select_kinds(collected.facts, resource_names)
    observed = {f.kind for f in selected}
    # requested names that match nothing still get a (not applicable) column
    declared = [
        name for name in resource_names or []
        if not any(facts_mod.accept_kind(kind, [name]) for kind in observed)
    ]
    return aggregate(
        selected,
        group_by,
        ratios=build_selection(ratios) if ratios else None,
        kinds=declared,
        diagnostics=collected.diagnostics,
        usage_available=snapshot.usage_available,
    )


def render(report: AllocationReport, output: str, show_zero: bool = False, cluster_name: Optional[str] = None) -> str:
    if output == 'csv':
        return report_mod.render_csv(report)
    if output == 'json':
        return json.dumps(report_mod.report_to_dict(report, cluster_name), indent=2)
    return report_mod.render_table(report, show_zero=show_zero)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='kube-allocations',
        description='List allocations (cpu, memory, gpu, ...) x utilization, requested, limit, allocatable',
    )
    parser.add_argument('--context', default=config.KUBE_CONTEXT,
                        help='The name of the kubeconfig context to use')
    parser.add_argument('-n', '--namespace', default=config.NAMESPACE,
                        help='Show only pods from this namespace')
    parser.add_argument('-u', '--utilization', action='store_true', default=config.REQUIRE_USAGE,
                        help='Warn when utilization cannot be retrieved')
    parser.add_argument('-z', '--show-zero', action='store_true', default=config.SHOW_ZERO,
                        help='Show lines with zero requested, zero limit and zero allocatable')
    parser.add_argument('-r', '--resource-name', action='append', dest='resource_names',
                        help='Filter resources shown by name (repeatable), by default all resources are listed')
    parser.add_argument('-g', '--group-by', action='append', dest='group_by',
                        choices=config.GROUP_BY_LEVELS,
                        help='Group information hierarchically (repeatable, default: -g resource -g node -g pod)')
    parser.add_argument('-o', '--output', choices=config.OUTPUT_FORMATS, default=config.OUTPUT_FORMAT,
                        help='Output format')
    parser.add_argument('--usage-source', choices=config.USAGE_SOURCES, default=config.USAGE_SOURCE,
                        help='Where utilization samples come from')
    parser.add_argument('--config', dest='config_path', default=config.REPORT_CONFIG_PATH,
                        help='YAML report config (group_by, resource_names, ratios)')
    parser.add_argument('--save', action='store_true',
                        help=f'Also write the JSON report to {config.OUTPUT_DIR}/ for the dashboard')
    return parser.parse_args(argv)


def run_once(args: argparse.Namespace) -> AllocationReport:
    """Fetch a snapshot and build the report for the parsed arguments"""
    report_config = load_report_config(args.config_path)
    group_by = args.group_by or get_config_value(report_config, 'group_by', default=config.GROUP_BY)
    validate_grouping(group_by)
    resource_names = args.resource_names or get_config_value(
        report_config, 'resource_names', default=config.RESOURCE_NAMES
    )
    ratios = get_config_value(report_config, 'ratios')

    snapshot = discovery_mod.fetch_snapshot(
        namespace=args.namespace,
        usage_source=args.usage_source,
        context=args.context,
        require_usage=args.utilization,
    )
    return build_report(
        snapshot,
        group_by,
        resource_names=resource_names,
        ratios=ratios,
        count_pods=config.COUNT_PODS,
    )


def main(argv: Optional[List[str]] = None) -> int:
    # Setup logging first
    setup_logging()

    # Validate configuration
    try:
        validate_config()
    except ConfigValidationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    args = parse_args(argv)
    cluster_name = args.context or config.CLUSTER_NAME

    try:
        report = run_once(args)
    except (ConfigValidationError, ValueError, OSError, yaml.YAMLError) as e:
        logger.error(f"Invalid report configuration: {e}")
        return 1
    except MissingCollaboratorDataError as e:
        logger.error(f"[{cluster_name}] {e}")
        return 1
    except IncompatibleKindError as e:
        logger.error(f"[{cluster_name}] Internal consistency error, no report produced: {e}")
        return 1

    sys.stdout.write(render(report, args.output, args.show_zero, cluster_name))
    sys.stdout.write("\n")

    if report.skipped_count:
        logger.warning(f"{report.skipped_count} fact(s) skipped due to malformed quantities")

    if args.save:
        os.makedirs(config.OUTPUT_DIR, exist_ok=True)
        output_path = get_report_output_path(cluster_name)
        _atomic_write(output_path, json.dumps(report_mod.report_to_dict(report, cluster_name), indent=2))
        logger.info(f"[{cluster_name}] Wrote report to {output_path}")

    return 0


if __name__ == '__main__':
    raise SystemExit(main())
