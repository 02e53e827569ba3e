import os
import json
import logging
import sys
from typing import Optional, List, Dict, Any
from urllib.parse import urlparse

import yaml


# =============================================================================
# Logging Configuration
# =============================================================================
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT: str = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)


def setup_logging():
    """Configure application-wide logging (stderr, stdout carries the report)"""
    level = getattr(logging, LOG_LEVEL, logging.INFO)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)]
    )
    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str = "") -> List[str]:
    return [s.strip() for s in os.getenv(name, default).split(",") if s.strip()]


# =============================================================================
# Cluster Access
# =============================================================================
# kubeconfig context; empty means current context (or in-cluster config)
KUBE_CONTEXT: Optional[str] = os.getenv("KUBE_CONTEXT") or None
# Restrict pods to one namespace; empty means all namespaces
NAMESPACE: Optional[str] = os.getenv("NAMESPACE") or None
KUBE_REQUEST_TIMEOUT_SECONDS: int = int(os.getenv("KUBE_REQUEST_TIMEOUT_SECONDS", "30"))
FETCH_TIMEOUT_SECONDS: int = int(os.getenv("FETCH_TIMEOUT_SECONDS", "120"))

# =============================================================================
# Usage Samples
# =============================================================================
# "metrics-server", "prometheus" or "none"
USAGE_SOURCE: str = os.getenv("USAGE_SOURCE", "metrics-server").lower()
# Warn when usage cannot be fetched (otherwise usage columns are silently hidden)
REQUIRE_USAGE: bool = _env_bool("REQUIRE_USAGE", False)

PROMETHEUS_URL: str = os.getenv("PROMETHEUS_URL", "http://localhost:9090")
PROMETHEUS_TIMEOUT_SECONDS: int = int(os.getenv("PROMETHEUS_TIMEOUT_SECONDS", "30"))
PROMETHEUS_RETRY_COUNT: int = int(os.getenv("PROMETHEUS_RETRY_COUNT", "3"))
PROMETHEUS_RETRY_BACKOFF_BASE: int = int(os.getenv("PROMETHEUS_RETRY_BACKOFF_BASE", "1"))
# Window of the cpu rate() used for usage samples
PROMETHEUS_RATE_WINDOW: str = os.getenv("PROMETHEUS_RATE_WINDOW", "5m")

# =============================================================================
# Report
# =============================================================================
GROUP_BY: List[str] = _env_list("GROUP_BY", "resource,node,pod")
RESOURCE_NAMES: List[str] = _env_list("RESOURCE_NAMES")
SHOW_ZERO: bool = _env_bool("SHOW_ZERO", False)
COUNT_PODS: bool = _env_bool("COUNT_PODS", True)
OUTPUT_FORMAT: str = os.getenv("OUTPUT_FORMAT", "table").lower()

# Optional YAML file with grouping, resource names and ratio selection
REPORT_CONFIG_PATH: Optional[str] = os.getenv("REPORT_CONFIG_PATH") or None

# Output directory for saved JSON reports (read by the dashboard)
OUTPUT_DIR: str = os.getenv("OUTPUT_DIR", "output")
CLUSTER_NAME: str = os.getenv("CLUSTER_NAME", KUBE_CONTEXT or "default")

# Clusters listed on the dashboard; defaults to the local one
_DEFAULT_CLUSTERS: List[Dict[str, Any]] = [
    {"cluster_name": CLUSTER_NAME, "environment": "local"}
]


def _load_clusters() -> List[Dict[str, Any]]:
    """Load dashboard clusters from env var or use defaults"""
    env_json = os.getenv("CLUSTERS_JSON")
    if env_json:
        try:
            return json.loads(env_json)
        except json.JSONDecodeError:
            logging.warning("Invalid CLUSTERS_JSON, using defaults")
    return _DEFAULT_CLUSTERS


CLUSTERS: List[Dict[str, Any]] = _load_clusters()


def get_report_output_path(cluster_name: str) -> str:
    """Get cluster-specific report path: {cluster_name}_allocations.json"""
    return os.path.join(OUTPUT_DIR, f"{cluster_name}_allocations.json")


# =============================================================================
# YAML Report Configuration
# =============================================================================
def load_report_config(config_path: Optional[str]) -> Dict[str, Any]:
    """Load the YAML report config; missing path means no overrides

    Example:
        group_by: [node, namespace]
        resource_names: [cpu, memory, gpu]
        ratios:
          node: [requested/allocatable, used/allocatable]
          pod: [used/requested, used/limit]
    """
    if not config_path:
        return {}
    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigValidationError(f"{config_path} must contain a mapping, got {type(data).__name__}")
    return data


def get_config_value(config: Dict[str, Any], *keys, default=None):
    """Safely get nested config value with default fallback"""
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


__all__ = [
    "LOG_LEVEL",
    "LOG_FORMAT",
    "setup_logging",
    "KUBE_CONTEXT",
    "NAMESPACE",
    "KUBE_REQUEST_TIMEOUT_SECONDS",
    "FETCH_TIMEOUT_SECONDS",
    "USAGE_SOURCE",
    "REQUIRE_USAGE",
    "PROMETHEUS_URL",
    "PROMETHEUS_TIMEOUT_SECONDS",
    "PROMETHEUS_RETRY_COUNT",
    "PROMETHEUS_RETRY_BACKOFF_BASE",
    "PROMETHEUS_RATE_WINDOW",
    "GROUP_BY",
    "RESOURCE_NAMES",
    "SHOW_ZERO",
    "COUNT_PODS",
    "OUTPUT_FORMAT",
    "REPORT_CONFIG_PATH",
    "OUTPUT_DIR",
    "CLUSTER_NAME",
    "CLUSTERS",
    "get_report_output_path",
    "load_report_config",
    "get_config_value",
    "validate_config",
]


# =============================================================================
# Configuration Validation
# =============================================================================
USAGE_SOURCES = ("metrics-server", "prometheus", "none")
OUTPUT_FORMATS = ("table", "csv", "json")
GROUP_BY_LEVELS = ("resource", "node", "namespace", "pod", "container")


class ConfigValidationError(Exception):
    """Raised when configuration validation fails"""
    pass


def _validate_positive_int(name: str, value: int) -> None:
    if value <= 0:
        raise ConfigValidationError(f"{name} must be positive, got {value}")


def _validate_url(name: str, value: str) -> None:
    try:
        result = urlparse(value)
        if not all([result.scheme, result.netloc]):
            raise ValueError("Missing scheme or netloc")
        if result.scheme not in ('http', 'https'):
            raise ValueError(f"Invalid scheme: {result.scheme}")
    except Exception as e:
        raise ConfigValidationError(f"{name} is not a valid URL: {value} ({e})")


def _validate_choice(name: str, value: str, choices) -> None:
    if value not in choices:
        raise ConfigValidationError(
            f"{name} must be one of {', '.join(choices)}, got '{value}'"
        )


def _validate_group_by(value: List[str]) -> None:
    unknown = [level for level in value if level not in GROUP_BY_LEVELS]
    if unknown:
        raise ConfigValidationError(
            f"GROUP_BY contains unknown level(s) {unknown}, expected any of {', '.join(GROUP_BY_LEVELS)}"
        )
    if len(set(value)) != len(value):
        raise ConfigValidationError(f"GROUP_BY must not repeat levels, got {value}")


def validate_config() -> None:
    """Validate all configuration values on startup

    Raises:
        ConfigValidationError: If any configuration value is invalid
    """
    errors = []

    for name, value in (
        ("KUBE_REQUEST_TIMEOUT_SECONDS", KUBE_REQUEST_TIMEOUT_SECONDS),
        ("FETCH_TIMEOUT_SECONDS", FETCH_TIMEOUT_SECONDS),
        ("PROMETHEUS_TIMEOUT_SECONDS", PROMETHEUS_TIMEOUT_SECONDS),
        ("PROMETHEUS_RETRY_COUNT", PROMETHEUS_RETRY_COUNT),
    ):
        try:
            _validate_positive_int(name, value)
        except ConfigValidationError as e:
            errors.append(str(e))

    try:
        _validate_choice("USAGE_SOURCE", USAGE_SOURCE, USAGE_SOURCES)
    except ConfigValidationError as e:
        errors.append(str(e))

    try:
        _validate_choice("OUTPUT_FORMAT", OUTPUT_FORMAT, OUTPUT_FORMATS)
    except ConfigValidationError as e:
        errors.append(str(e))

    try:
        _validate_group_by(GROUP_BY)
    except ConfigValidationError as e:
        errors.append(str(e))

    if USAGE_SOURCE == "prometheus":
        try:
            _validate_url("PROMETHEUS_URL", PROMETHEUS_URL)
        except ConfigValidationError as e:
            errors.append(str(e))

    if REPORT_CONFIG_PATH and not os.path.exists(REPORT_CONFIG_PATH):
        errors.append(f"REPORT_CONFIG_PATH does not exist: {REPORT_CONFIG_PATH}")

    if errors:
        raise ConfigValidationError(
            "Configuration validation failed:\n  - " + "\n  - ".join(errors)
        )
