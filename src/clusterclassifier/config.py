"""Controller startup configuration."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from enum import IntEnum

from clusterclassifier.core.errors import InvalidEndpointError

# How long to wait before checking again whether a classifier was removed from
# every cluster during deletion.
DELETE_REQUEUE_AFTER = 20.0
# How long to wait before checking again whether a classifier reached every cluster.
NORMAL_REQUEUE_AFTER = 20.0
REPORT_COLLECTION_INTERVAL = 20.0
# Deploy/undeploy handler timeout.
PROGRAM_DURATION = 180.0

CONTROL_PLANE_ENDPOINT_OPTION = "controlplaneendpoint-key"

_ENDPOINT_RE = re.compile(r"^https://[0-9a-zA-Z][0-9a-zA-Z-.]+[0-9a-zA-Z]:\d+$")


class ReportMode(IntEnum):
    # classifier periodically pulls ClassifierReports from every managed cluster
    COLLECT_FROM_MANAGEMENT_CLUSTER = 0
    # the agent in each managed cluster pushes ClassifierReports using a
    # kubeconfig obtained through an AccessRequest
    AGENT_SEND_REPORTS_NO_GATEWAY = 1


def validate_control_plane_endpoint(endpoint: str) -> str:
    value = (endpoint or "").strip()
    if not _ENDPOINT_RE.match(value):
        raise InvalidEndpointError(
            f"control plane endpoint must be in the form https://host:port, got: {endpoint!r}"
        )
    return value


def split_control_plane_endpoint(endpoint: str) -> tuple[str, int]:
    """Split ``https://host:port`` into ``("https://host", port)``."""
    value = validate_control_plane_endpoint(endpoint)
    scheme, host, port = value.split(":")
    return f"{scheme}:{host}", int(port)


def _parse_env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc


def _parse_env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc


@dataclass
class ControllerConfig:
    report_mode: ReportMode = ReportMode.COLLECT_FROM_MANAGEMENT_CLUSTER
    control_plane_endpoint: str = ""
    concurrent_reconciles: int = 10
    worker_number: int = 20
    verbosity: int = 0
    kubectl: str = "kubectl"
    resync_interval: float = 10.0
    agent_manifest: str | None = None

    def validate(self) -> ControllerConfig:
        if self.concurrent_reconciles < 1:
            raise ValueError("concurrent reconciles must be >= 1")
        if self.worker_number < 1:
            raise ValueError("worker number must be >= 1")
        if self.resync_interval <= 0:
            raise ValueError("resync interval must be > 0")
        if self.report_mode == ReportMode.AGENT_SEND_REPORTS_NO_GATEWAY:
            self.control_plane_endpoint = validate_control_plane_endpoint(self.control_plane_endpoint)
        return self

    @classmethod
    def from_env(cls) -> ControllerConfig:
        mode = _parse_env_int("CLASSIFIER_REPORT_MODE", int(ReportMode.COLLECT_FROM_MANAGEMENT_CLUSTER))
        try:
            report_mode = ReportMode(mode)
        except ValueError as exc:
            raise ValueError(f"CLASSIFIER_REPORT_MODE must be 0 or 1, got: {mode}") from exc
        return cls(
            report_mode=report_mode,
            control_plane_endpoint=os.environ.get("CLASSIFIER_CONTROL_PLANE_ENDPOINT", ""),
            concurrent_reconciles=_parse_env_int("CLASSIFIER_CONCURRENT_RECONCILES", 10),
            worker_number=_parse_env_int("CLASSIFIER_WORKER_NUMBER", 20),
            verbosity=_parse_env_int("CLASSIFIER_VERBOSITY", 0),
            kubectl=os.environ.get("KUBECTL", "kubectl"),
            resync_interval=_parse_env_float("CLASSIFIER_RESYNC_INTERVAL", 10.0),
            agent_manifest=os.environ.get("CLASSIFIER_AGENT_MANIFEST") or None,
        )
