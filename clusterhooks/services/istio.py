from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any, Callable

import yaml

from clusterhooks.config import Settings
from clusterhooks.provisioner import DeploymentInvoker, DeploymentSpec, KubeClient
from clusterhooks.services.errors import HookStage
from clusterhooks.services.hook_params import bind, param
from clusterhooks.services.hooks import ClusterHandle, RawHookParams, render_values, run_step

logger = logging.getLogger(__name__)

ISTIO_NAMESPACE = "istio-system"
ISTIO_RELEASE_NAME = "istio"
ISTIO_CHART_NAME = "istio"
SIDECAR_INJECTION_LABEL = "istio-injection"
SIDECAR_INJECTION_ENABLED = "enabled"
PROMETHEUS_TARGETS_LABEL = "prometheus_scrape_config"
GRAFANA_DASHBOARD_LABEL = "grafana_dashboard"

# (job name, service, port name) scraped from the mesh control plane
_SCRAPE_TARGETS = (
    ("istio-mesh", "istio-telemetry", "prometheus"),
    ("istio-policy", "istio-policy", "http-monitoring"),
    ("istio-telemetry", "istio-telemetry", "http-monitoring"),
    ("pilot", "istio-pilot", "http-monitoring"),
    ("galley", "istio-galley", "http-monitoring"),
    ("citadel", "istio-citadel", "http-monitoring"),
)
_DASHBOARDS = (
    ("istio-mesh", "Istio Mesh Dashboard"),
    ("istio-service", "Istio Service Dashboard"),
    ("istio-workload", "Istio Workload Dashboard"),
    ("istio-performance", "Istio Performance Dashboard"),
)


@dataclass(frozen=True)
class InstallServiceMeshParams:
    # namespaces labelled with istio-injection=enabled
    auto_sidecar_inject_namespaces: tuple[str, ...] = param(
        "autoSidecarInjectNamespaces", {"type": "array", "items": {"type": "string"}}, ()
    )
    # keep Envoy sidecars from intercepting requests that leave the cluster
    bypass_egress_traffic: bool = param("bypassEgressTraffic", {"type": "boolean"}, False)
    enable_mtls: bool = param("mtls", {"type": "boolean"}, False)


def build_mesh_config(params: InstallServiceMeshParams, ip_ranges: tuple[str, str] | None = None) -> dict[str, Any]:
    config: dict[str, Any] = {"global": {"mtls": {"enabled": params.enable_mtls}}}
    if ip_ranges is not None:
        pod_range, service_range = ip_ranges
        config["global"]["proxy"] = {"includeIPRanges": f"{pod_range},{service_range}"}
    return config


def prometheus_target_manifests(*, monitoring_namespace: str) -> list[dict[str, Any]]:
    scrape_configs = [
        {
            "job_name": job,
            "kubernetes_sd_configs": [{"role": "endpoints", "namespaces": {"names": [ISTIO_NAMESPACE]}}],
            "relabel_configs": [
                {
                    "source_labels": ["__meta_kubernetes_service_name", "__meta_kubernetes_endpoint_port_name"],
                    "action": "keep",
                    "regex": f"{service};{port}",
                }
            ],
        }
        for job, service, port in _SCRAPE_TARGETS
    ]
    return [
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": "istio-prometheus-targets",
                "namespace": monitoring_namespace,
                "labels": {PROMETHEUS_TARGETS_LABEL: "1", "app": "istio"},
            },
            "data": {"istio.yaml": yaml.safe_dump(scrape_configs, sort_keys=False)},
        }
    ]


def grafana_dashboard_manifests(*, monitoring_namespace: str) -> list[dict[str, Any]]:
    manifests = []
    for uid, title in _DASHBOARDS:
        dashboard = {"uid": uid, "title": title, "tags": ["istio"], "editable": False, "panels": []}
        manifests.append(
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {
                    "name": f"{uid}-dashboard",
                    "namespace": monitoring_namespace,
                    "labels": {GRAFANA_DASHBOARD_LABEL: "1", "app": "istio"},
                },
                "data": {f"{uid}.json": json.dumps(dashboard)},
            }
        )
    return manifests


def label_namespaces(kube: KubeClient, namespaces: tuple[str, ...]) -> None:
    for namespace in namespaces:
        kube.label_namespace(namespace, key=SIDECAR_INJECTION_LABEL, value=SIDECAR_INJECTION_ENABLED)


class InstallServiceMesh:
    """Post hook installing Istio and wiring its injection and monitoring."""

    name = "InstallServiceMesh"

    def __init__(
        self,
        *,
        settings: Settings,
        invoker: DeploymentInvoker,
        kube_client_factory: Callable[[bytes], KubeClient] = KubeClient,
    ) -> None:
        self._settings = settings
        self._invoker = invoker
        self._kube_client_factory = kube_client_factory

    def __call__(self, cluster: ClusterHandle, params: RawHookParams) -> None:
        bound = run_step(HookStage.BIND, "failed to cast posthook param", bind, params, InstallServiceMeshParams)
        logger.info("istio params for cluster %s: %r", cluster.name, bound)

        ip_ranges = None
        if bound.bypass_egress_traffic:
            ip_ranges = run_step(
                HookStage.DERIVE_CONFIG,
                "couldn't set included IP ranges in Envoy config, external requests will be intercepted",
                cluster.get_pod_and_service_cidrs,
            )
        values = run_step(
            HookStage.SERIALIZE,
            "failed to marshal yaml values",
            render_values,
            build_mesh_config(bound, ip_ranges),
        )

        spec = DeploymentSpec(
            chart_ref=self._settings.chart(ISTIO_CHART_NAME),
            release_name=ISTIO_RELEASE_NAME,
            namespace=ISTIO_NAMESPACE,
            values=values,
            version=self._settings.istio_chart_version,
            wait=False,
        )
        run_step(HookStage.DEPLOY, "installing mesh failed", self._invoker.install, cluster, spec)

        kubeconfig = run_step(HookStage.CLIENT, "failed to get kubeconfig", cluster.get_kubeconfig)
        kube = run_step(
            HookStage.CLIENT,
            "failed to create client from kubeconfig",
            self._kube_client_factory,
            kubeconfig,
        )
        with kube:
            run_step(
                HookStage.LABEL,
                "failed to label namespace",
                label_namespaces,
                kube,
                bound.auto_sidecar_inject_namespaces,
            )

            if cluster.is_monitoring_enabled():
                monitoring_namespace = self._settings.monitoring_namespace
                run_step(
                    HookStage.INTEGRATE,
                    "failed to add prometheus targets",
                    kube.apply_manifests,
                    prometheus_target_manifests(monitoring_namespace=monitoring_namespace),
                )
                run_step(
                    HookStage.INTEGRATE,
                    "failed to add grafana dashboards",
                    kube.apply_manifests,
                    grafana_dashboard_manifests(monitoring_namespace=monitoring_namespace),
                )

        run_step(HookStage.RECORD, "failed to record service mesh state", cluster.set_mesh_enabled, True)
        logger.info("Service mesh installed on cluster %s", cluster.name)
