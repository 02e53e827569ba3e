"""
Cluster snapshot retrieval.

Nodes, pods and usage samples are fetched concurrently from the Kubernetes API
(and optionally Prometheus), then handed over as one immutable Snapshot of
plain dicts in the API JSON shape. Node or pod failures abort the run; usage
is optional and its failure only drops the usage columns.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.exceptions import ApiException

import config
from metrics import prometheus_client as prom

logger = logging.getLogger(__name__)

METRICS_GROUP = "metrics.k8s.io"
METRICS_VERSION = "v1beta1"


class MissingCollaboratorDataError(Exception):
    """Raised when a required part of the snapshot could not be fetched"""
    pass


@dataclass(frozen=True)
class Snapshot:
    nodes: List[Dict[str, Any]]
    pods: List[Dict[str, Any]]
    usage: Dict[Tuple[str, str, str], Dict[str, Any]] = field(default_factory=dict)
    usage_available: bool = False


def load_cluster_config(context: Optional[str] = None) -> None:
    """Load kubeconfig (optionally a named context), falling back to in-cluster config"""
    try:
        k8s_config.load_kube_config(context=context)
    except k8s_config.ConfigException:
        if context:
            raise MissingCollaboratorDataError(f"kubeconfig context '{context}' not found")
        logger.info("No kubeconfig found, using in-cluster configuration")
        k8s_config.load_incluster_config()


def _as_dicts(items) -> List[Dict[str, Any]]:
    api_client = k8s_client.ApiClient()
    return [api_client.sanitize_for_serialization(item) for item in items]


def list_nodes() -> List[Dict[str, Any]]:
    try:
        nodes = k8s_client.CoreV1Api().list_node(_request_timeout=config.KUBE_REQUEST_TIMEOUT_SECONDS)
    except ApiException as e:
        raise MissingCollaboratorDataError(f"Failed to list nodes via k8s api: {e.status} {e.reason}")
    return _as_dicts(nodes.items)


def list_pods(namespace: Optional[str] = None) -> List[Dict[str, Any]]:
    api = k8s_client.CoreV1Api()
    try:
        if namespace:
            pods = api.list_namespaced_pod(namespace, _request_timeout=config.KUBE_REQUEST_TIMEOUT_SECONDS)
        else:
            pods = api.list_pod_for_all_namespaces(_request_timeout=config.KUBE_REQUEST_TIMEOUT_SECONDS)
    except ApiException as e:
        raise MissingCollaboratorDataError(f"Failed to list pods via k8s api: {e.status} {e.reason}")
    return _as_dicts(pods.items)


def list_pod_metrics(namespace: Optional[str] = None) -> Dict[Tuple[str, str, str], Dict[str, Any]]:
    """Container usage from metrics-server, keyed by (namespace, pod, container)"""
    api = k8s_client.CustomObjectsApi()
    try:
        if namespace:
            data = api.list_namespaced_custom_object(
                METRICS_GROUP, METRICS_VERSION, namespace, "pods",
                _request_timeout=config.KUBE_REQUEST_TIMEOUT_SECONDS,
            )
        else:
            data = api.list_cluster_custom_object(
                METRICS_GROUP, METRICS_VERSION, "pods",
                _request_timeout=config.KUBE_REQUEST_TIMEOUT_SECONDS,
            )
    except ApiException as e:
        raise MissingCollaboratorDataError(
            f"Failed to list podmetrics, maybe Metrics API not available: {e.status} {e.reason}"
        )
    usage: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
    for item in data.get('items', []):
        metadata = item.get('metadata') or {}
        for container in item.get('containers') or []:
            key = (metadata.get('namespace') or 'default', metadata.get('name'), container.get('name'))
            usage[key] = dict(container.get('usage') or {})
    return usage


def fetch_usage(source: str, namespace: Optional[str] = None) -> Dict[Tuple[str, str, str], Dict[str, Any]]:
    if source == "metrics-server":
        return list_pod_metrics(namespace)
    if source == "prometheus":
        return prom.query_container_usage(namespace)
    return {}


def fetch_snapshot(
    namespace: Optional[str] = None,
    usage_source: Optional[str] = None,
    context: Optional[str] = None,
    require_usage: Optional[bool] = None,
) -> Snapshot:
    """Fetch nodes, pods and usage concurrently.

    Each part is awaited for at most FETCH_TIMEOUT_SECONDS; a usage timeout only
    drops usage.

    Raises:
        MissingCollaboratorDataError: nodes or pods could not be listed in time
    """
    usage_source = usage_source or config.USAGE_SOURCE
    require_usage = config.REQUIRE_USAGE if require_usage is None else require_usage
    load_cluster_config(context)

    executor = ThreadPoolExecutor(max_workers=3, thread_name_prefix="snapshot")
    try:
        nodes_future = executor.submit(list_nodes)
        pods_future = executor.submit(list_pods, namespace)
        usage_future = executor.submit(fetch_usage, usage_source, namespace)

        try:
            nodes = nodes_future.result(timeout=config.FETCH_TIMEOUT_SECONDS)
            pods = pods_future.result(timeout=config.FETCH_TIMEOUT_SECONDS)
        except MissingCollaboratorDataError:
            raise
        except Exception as e:
            raise MissingCollaboratorDataError(
                f"Failed to fetch cluster snapshot: {str(e) or type(e).__name__}"
            )

        usage: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        usage_available = False
        if usage_source != "none":
            try:
                usage = usage_future.result(timeout=config.FETCH_TIMEOUT_SECONDS)
                usage_available = True
            except Exception as e:
                log = logger.warning if require_usage else logger.debug
                log(f"Usage samples unavailable ({usage_source}): {str(e) or type(e).__name__}")
    finally:
        # calls past FETCH_TIMEOUT_SECONDS are abandoned, not awaited
        executor.shutdown(wait=False, cancel_futures=True)

    logger.info(
        f"Fetched {len(nodes)} nodes, {len(pods)} pods and usage for {len(usage)} containers"
    )
    return Snapshot(nodes=nodes, pods=pods, usage=usage, usage_available=usage_available)
