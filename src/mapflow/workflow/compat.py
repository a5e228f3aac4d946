"""Workflow engine version compatibility.

Manifesto:
    The external workflow engine changes its REST payloads between minor
    versions. Callers ask this module which features a version supports
    and which endpoint and payload shape to use, instead of scattering
    version checks through the client.

Features:
    - ``parse_version`` / ``compare_versions`` for ``major.minor.patch[-suffix]``
    - Feature matrix with minimum versions
    - ``endpoint()`` and ``payload()`` resolved per version
    - ``normalize_*`` helpers that flatten diagnostics, cluster and flow status
    - ``compatibility_report()`` with upgrade recommendations

Tags:
    mapflow, workflow-engine, versioning

Doc-Types:
    api-reference
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from mapflow.core.logging import get_logger

logger = get_logger(__name__)

_VERSION_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)(-.*)?$")

MINIMUM_SUPPORTED = "1.12.0"

FEATURES: dict[str, str] = {
    "cluster-api": "1.12.0",
    "parameter-contexts": "1.10.0",
    "process-group-parameters": "1.10.0",
    "flow-registry": "1.6.0",
    "variable-registry": "1.4.0",
    "process-group-status-history": "1.3.0",
    "reporting-tasks": "1.0.0",
    "controller-services": "1.0.0",
    "connections-load-balance": "1.8.0",
    "flow-file-expiration": "1.0.0",
    "flow-analysis-rules": "1.16.0",
    "stateless-engine": "1.15.0",
    "python-processors": "1.16.0",
}

ENDPOINTS: dict[str, str] = {
    "system-diagnostics": "/system-diagnostics",
    "cluster-summary": "/cluster/summary",
    "root-process-group": "/process-groups/root",
    "process-group": "/process-groups/{id}",
    "process-groups": "/process-groups/{id}/process-groups",
    "processor": "/processors/{id}",
    "processor-run-status": "/processors/{id}/run-status",
    "processors": "/process-groups/{id}/processors",
    "connections": "/process-groups/{id}/connections",
    "controller-services": "/controller-services",
    "reporting-tasks": "/reporting-tasks",
    "parameter-contexts": "/parameter-contexts",
    "flow-status": "/flow/status",
    "processor-types": "/flow/processor-types",
    "controller-service-types": "/flow/controller-service-types",
    "flow-registry-clients": "/flow/registries",
    "flow-analysis-rules": "/flow-analysis-rules",
    "access-token": "/access/token",
}

@dataclass(frozen=True)
class Version:
    major: int
    minor: int
    patch: int
    suffix: str = ""
    raw: str = ""

    @property
    def key(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def to_dict(self) -> dict[str, Any]:
        return {"major": self.major, "minor": self.minor, "patch": self.patch, "suffix": self.suffix, "raw": self.raw}


def parse_version(value: str | None) -> Version | None:
    """Parse ``1.16.3`` or ``1.16.3-SNAPSHOT``; None for anything else."""
    if not value:
        return None
    match = _VERSION_RE.match(value.strip())
    if match is None:
        logger.warning("workflow.invalid_version", version=value)
        return None
    return Version(int(match[1]), int(match[2]), int(match[3]), match[4] or "", value)


def compare_versions(left: str | None, right: str | None) -> int:
    """Negative, zero or positive like ``cmp``. Unparseable versions compare equal."""
    a, b = parse_version(left), parse_version(right)
    if a is None or b is None:
        return 0
    return (a.key > b.key) - (a.key < b.key)


def _at_least(version: str | None, minimum: str) -> bool:
    parsed = parse_version(version)
    return parsed is not None and parsed.key >= parse_version(minimum).key


class VersionCompatibility:
    """Feature, endpoint and payload decisions for one engine version family."""

    def __init__(self, features: dict[str, str] | None = None) -> None:
        self.features = dict(FEATURES if features is None else features)

    def is_feature_supported(self, feature: str, version: str | None) -> bool:
        minimum = self.features.get(feature)
        if minimum is None:
            logger.warning("workflow.unknown_feature", feature=feature)
            return False
        return _at_least(version, minimum)

    def available_features(self, version: str | None) -> list[str]:
        return [f for f in self.features if self.is_feature_supported(f, version)]

    @staticmethod
    def is_version_supported(version: str | None) -> bool:
        return _at_least(version, MINIMUM_SUPPORTED)

    # ── Endpoints ────────────────────────────────────────────────────

    def endpoint(self, operation: str, version: str | None = None, **params: Any) -> str:
        """Path for ``operation`` with ``{name}`` placeholders filled from ``params``.

        Raises:
            KeyError: Unknown operation.
        """
        template = ENDPOINTS.get(operation)
        if template is None:
            raise KeyError(f"Unknown operation: {operation}")
        if version and operation in self.features and not self.is_feature_supported(operation, version):
            logger.warning("workflow.endpoint_unsupported", operation=operation, version=version)
        for key, value in params.items():
            template = template.replace(f"{{{key}}}", str(value))
        return template

    # ── Payloads ─────────────────────────────────────────────────────

    def payload(self, operation: str, version: str | None, data: dict[str, Any]) -> dict[str, Any]:
        """Request body for creating ``operation`` on ``version``."""
        if operation == "process-groups":
            return self._process_group(data, version)
        if operation == "processors":
            return self._processor(data, version)
        if operation == "connections":
            return self._connection(data)
        if operation == "controller-services":
            return _entity({
                "type": data.get("type"),
                "name": data.get("name"),
                "comments": data.get("comments", ""),
                "properties": data.get("properties", {}),
            })
        if operation == "parameter-contexts":
            component = {
                "name": data.get("name"),
                "description": data.get("description", ""),
                "parameters": data.get("parameters", []),
            }
            if _at_least(version, "1.15.0"):
                component["inheritedParameterContexts"] = data.get("inheritedParameterContexts", [])
            return _entity(component)
        return data

    @staticmethod
    def _process_group(data: dict[str, Any], version: str | None) -> dict[str, Any]:
        component = {
            "name": data.get("name"),
            "position": data.get("position") or {"x": 0, "y": 0},
            "comments": data.get("comments", ""),
        }
        if _at_least(version, "1.13.0"):
            component["parameterContext"] = data.get("parameterContext")
            component["flowfileConcurrency"] = data.get("flowfileConcurrency", "UNBOUNDED")
            component["flowfileOutboundPolicy"] = data.get("flowfileOutboundPolicy", "STREAM_WHEN_AVAILABLE")
        return _entity(component)

    @staticmethod
    def _processor(data: dict[str, Any], version: str | None) -> dict[str, Any]:
        config = data.get("config") or {}
        processor_config = {
            "schedulingPeriod": config.get("schedulingPeriod", "0 sec"),
            "schedulingStrategy": config.get("schedulingStrategy", "TIMER_DRIVEN"),
            "executionNode": config.get("executionNode", "ALL"),
            "penaltyDuration": config.get("penaltyDuration", "30 sec"),
            "yieldDuration": config.get("yieldDuration", "1 sec"),
            "bulletinLevel": config.get("bulletinLevel", "WARN"),
            "runDurationMillis": config.get("runDurationMillis", 0),
            "concurrentlySchedulableTaskCount": config.get("concurrentlySchedulableTaskCount", 1),
            "properties": config.get("properties", {}),
            "autoTerminatedRelationships": config.get("autoTerminatedRelationships", []),
            "comments": config.get("comments", ""),
        }
        if _at_least(version, "1.14.0"):
            processor_config["retryCount"] = config.get("retryCount", 10)
            processor_config["retriedRelationships"] = config.get("retriedRelationships", [])
            processor_config["backoffMechanism"] = config.get("backoffMechanism", "PENALIZE_FLOWFILE")
            processor_config["maxBackoffPeriod"] = config.get("maxBackoffPeriod", "10 mins")
        return _entity({
            "type": data.get("type"),
            "name": data.get("name"),
            "position": data.get("position") or {"x": 0, "y": 0},
            "config": processor_config,
        })

    @staticmethod
    def _connection(data: dict[str, Any]) -> dict[str, Any]:
        group_id = data.get("processGroupId")
        return _entity({
            "name": data.get("name", ""),
            "source": {"id": data.get("sourceId"), "groupId": group_id, "type": data.get("sourceType", "PROCESSOR")},
            "destination": {
                "id": data.get("destinationId"),
                "groupId": group_id,
                "type": data.get("destinationType", "PROCESSOR"),
            },
            "selectedRelationships": data.get("relationships", []),
            "flowFileExpiration": data.get("flowFileExpiration", "0 sec"),
            "backPressureDataSizeThreshold": data.get("backPressureDataSizeThreshold", "1 GB"),
            "backPressureObjectThreshold": data.get("backPressureObjectThreshold", 10000),
            "bends": data.get("bends", []),
        })

    # ── Reports ──────────────────────────────────────────────────────

    def recommendations(self, version: str | None) -> list[str]:
        parsed = parse_version(version)
        if parsed is None:
            return ["Invalid version format. Use semantic versioning (e.g. 1.16.3)."]
        notes = []
        if not self.is_version_supported(version):
            notes.append(f"This version is not supported. Upgrade to {MINIMUM_SUPPORTED} or later.")
        for feature, label in (
            ("flow-analysis-rules", "Flow Analysis Rules"),
            ("stateless-engine", "the Stateless Engine"),
        ):
            if not self.is_feature_supported(feature, version):
                notes.append(f"Upgrade to {self.features[feature]}+ for {label} support.")
        if not _at_least(version, "1.14.0"):
            notes.append("Upgrade to 1.14.0+ for processor retry settings.")
        return notes

    def compatibility_report(self, version: str | None) -> dict[str, Any]:
        parsed = parse_version(version)
        supported = self.available_features(version)
        return {
            "version": version,
            "parsed": parsed.to_dict() if parsed else None,
            "isSupported": self.is_version_supported(version),
            "supportedFeatures": supported,
            "unsupportedFeatures": [f for f in self.features if f not in supported],
            "recommendations": self.recommendations(version),
        }


def _entity(component: dict[str, Any]) -> dict[str, Any]:
    return {"revision": {"version": 0}, "component": component}


# ── Response normalization ───────────────────────────────────────────


def normalize_system_diagnostics(response: dict[str, Any]) -> dict[str, Any]:
    snapshot = (response.get("systemDiagnostics") or {}).get("aggregateSnapshot") or {}
    return {
        "timestamp": snapshot.get("statsLastRefreshed") or datetime.now(UTC).isoformat(),
        "uptime": snapshot.get("uptime", "Unknown"),
        "version": (snapshot.get("versionInfo") or {}).get("niFiVersion", "Unknown"),
        "processors": {
            "available": snapshot.get("availableProcessors", 0),
            "loadAverage": snapshot.get("processorLoadAverage", 0),
        },
        "heap": {
            "used": snapshot.get("usedHeapBytes", 0),
            "free": snapshot.get("freeHeapBytes", 0),
            "total": snapshot.get("totalHeapBytes", 0),
            "max": snapshot.get("maxHeapBytes", 0),
        },
        "nonHeap": {
            "used": snapshot.get("usedNonHeapBytes", 0),
            "free": snapshot.get("freeNonHeapBytes", 0),
            "total": snapshot.get("totalNonHeapBytes", 0),
            "max": snapshot.get("maxNonHeapBytes", 0),
        },
        "raw": response,
    }


def normalize_cluster_summary(response: dict[str, Any]) -> dict[str, Any]:
    summary = response.get("clusterSummary") or {}
    return {
        "connected": summary.get("connectedNodeCount", 0),
        "total": summary.get("totalNodeCount", 0),
        "clustered": summary.get("clustered", False),
        "connectedToCluster": summary.get("connectedToCluster", False),
        "raw": response,
    }


def normalize_flow_status(response: dict[str, Any]) -> dict[str, Any]:
    status = response.get("controllerStatus") or {}
    return {
        "activeThreadCount": status.get("activeThreadCount", 0),
        "queued": status.get("queued", "0 / 0 bytes"),
        "flowFilesQueued": status.get("flowFilesQueued", 0),
        "bytesQueued": status.get("bytesQueued", 0),
        "runningCount": status.get("runningCount", 0),
        "stoppedCount": status.get("stoppedCount", 0),
        "invalidCount": status.get("invalidCount", 0),
        "disabledCount": status.get("disabledCount", 0),
        "raw": response,
    }


__all__ = [
    "ENDPOINTS",
    "FEATURES",
    "MINIMUM_SUPPORTED",
    "Version",
    "VersionCompatibility",
    "compare_versions",
    "normalize_cluster_summary",
    "normalize_flow_status",
    "normalize_system_diagnostics",
    "parse_version",
]
