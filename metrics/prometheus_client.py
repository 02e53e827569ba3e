"""
Prometheus client for container usage samples.

Usage is read with instant queries and returned as quantity text keyed by
(namespace, pod, container), the same shape metrics-server data is turned
into, so the fact collector does not care where samples came from.
"""
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import requests

import config

logger = logging.getLogger(__name__)


class PrometheusError(Exception):
    pass


class PrometheusConnectionError(PrometheusError):
    """Prometheus could not be reached after all retries"""
    pass


class PrometheusQueryError(PrometheusError):
    """Prometheus answered but the query failed"""
    pass


def _backoff_seconds(attempt: int) -> int:
    return config.PROMETHEUS_RETRY_BACKOFF_BASE * (2 ** attempt)


def query_instant(promql: str, prometheus_url: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Query Prometheus `/api/v1/query` and return `data.result`.
    Connection errors and timeouts are retried with exponential backoff.
    """
    url = f"{(prometheus_url or config.PROMETHEUS_URL).rstrip('/')}/api/v1/query"
    last_error: Optional[Exception] = None
    for attempt in range(config.PROMETHEUS_RETRY_COUNT):
        try:
            r = requests.get(url, params={"query": promql}, timeout=config.PROMETHEUS_TIMEOUT_SECONDS)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            last_error = e
            delay = _backoff_seconds(attempt)
            logger.warning(f"Prometheus request failed (attempt {attempt + 1}/{config.PROMETHEUS_RETRY_COUNT}): {e}")
            time.sleep(delay)
            continue
        except requests.RequestException as e:
            raise PrometheusQueryError(f"request failed: {e}")
        if r.status_code != 200:
            raise PrometheusQueryError(f"prometheus returned status {r.status_code}: {r.text}")
        data = r.json()
        if data.get("status") != "success":
            raise PrometheusQueryError(f"prometheus error: {data}")
        return data.get("data", {}).get("result", [])
    raise PrometheusConnectionError(f"prometheus unreachable at {url}: {last_error}")


def _selector(namespace: Optional[str]) -> str:
    labels = 'container!="",container!="POD"'
    if namespace:
        labels += f',namespace="{namespace}"'
    return labels


def _by_container(result: List[Dict[str, Any]]) -> Dict[Tuple[str, str, str], str]:
    samples = {}
    for res in result:
        metric = res.get("metric", {})
        namespace, pod, container = metric.get("namespace"), metric.get("pod"), metric.get("container")
        if not (namespace and pod and container):
            continue
        value = (res.get("value") or [None, None])[1]
        samples[(namespace, pod, container)] = value
    return samples


def query_container_usage(namespace: Optional[str] = None) -> Dict[Tuple[str, str, str], Dict[str, Any]]:
    """
    Returns (namespace, pod, container) -> {"cpu": cores text, "memory": bytes text}.
    PromQL used:
      cpu:    sum by (namespace, pod, container) (rate(container_cpu_usage_seconds_total{...}[<window>]))
      memory: sum by (namespace, pod, container) (container_memory_working_set_bytes{...})
    """
    selector = _selector(namespace)
    cpu = query_instant(
        f'sum by (namespace, pod, container) '
        f'(rate(container_cpu_usage_seconds_total{{{selector}}}[{config.PROMETHEUS_RATE_WINDOW}]))'
    )
    memory = query_instant(
        f'sum by (namespace, pod, container) (container_memory_working_set_bytes{{{selector}}})'
    )
    usage: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
    for key, value in _by_container(cpu).items():
        usage.setdefault(key, {})["cpu"] = value
    for key, value in _by_container(memory).items():
        usage.setdefault(key, {})["memory"] = value
    logger.info(f"Loaded Prometheus usage for {len(usage)} containers")
    return usage
