from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from clusterhooks.config import Settings
from clusterhooks.provisioner import DeploymentInvoker, DeploymentSpec
from clusterhooks.services.errors import HookStage
from clusterhooks.services.hook_params import bind, param
from clusterhooks.services.hooks import ClusterHandle, RawHookParams, render_values, run_step

logger = logging.getLogger(__name__)

INGRESS_RELEASE_NAME = "ingress"
INGRESS_CHART_NAME = "traefik"
SIDECAR_INJECT_ANNOTATION = "sidecar.istio.io/inject"


@dataclass(frozen=True)
class InstallIngressControllerParams:
    service_type: str = param(
        "serviceType", {"type": "string", "enum": ["LoadBalancer", "NodePort", "ClusterIP"]}, "LoadBalancer"
    )
    replicas: int = param("replicas", {"type": "integer", "minimum": 1}, 1)


def build_ingress_values(params: InstallIngressControllerParams, *, mesh_enabled: bool) -> dict[str, Any]:
    values: dict[str, Any] = {
        "replicas": params.replicas,
        "serviceType": params.service_type,
        "rbac": {"enabled": True},
        "ssl": {"enabled": True, "generateTLS": True},
    }
    if mesh_enabled:
        values["podAnnotations"] = {SIDECAR_INJECT_ANNOTATION: "true"}
    return values


class InstallIngressController:
    """Post hook deploying the Traefik ingress controller.

    When an earlier hook already put the cluster on the service mesh, the
    controller pods are annotated for sidecar injection.
    """

    name = "InstallIngressController"

    def __init__(self, *, settings: Settings, invoker: DeploymentInvoker) -> None:
        self._settings = settings
        self._invoker = invoker

    def __call__(self, cluster: ClusterHandle, params: RawHookParams) -> None:
        bound = run_step(
            HookStage.BIND, "failed to cast posthook param", bind, params, InstallIngressControllerParams
        )
        values = run_step(
            HookStage.SERIALIZE,
            "failed to marshal yaml values",
            render_values,
            build_ingress_values(bound, mesh_enabled=cluster.is_mesh_enabled()),
        )
        spec = DeploymentSpec(
            chart_ref=self._settings.chart(INGRESS_CHART_NAME),
            release_name=INGRESS_RELEASE_NAME,
            namespace=self._settings.system_namespace,
            values=values,
            version=self._settings.ingress_chart_version,
            wait=False,
        )
        run_step(HookStage.DEPLOY, "installing ingress controller failed", self._invoker.install, cluster, spec)
        logger.info("Ingress controller installed on cluster %s", cluster.name)
