from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable

from clusterhooks.provisioner import KubeClient
from clusterhooks.services.errors import HookStage
from clusterhooks.services.hook_params import bind, param
from clusterhooks.services.hooks import ClusterHandle, RawHookParams, run_step

logger = logging.getLogger(__name__)

DEFAULT_CLASS_ANNOTATION = "storageclass.kubernetes.io/is-default-class"


@dataclass(frozen=True)
class CreateDefaultStorageClassParams:
    name: str = param("name", {"type": "string", "minLength": 1}, "standard")
    provisioner: str = param("provisioner", {"type": "string", "minLength": 1}, "kubernetes.io/no-provisioner")
    reclaim_policy: str = param("reclaimPolicy", {"type": "string", "enum": ["Delete", "Retain"]}, "Delete")


def storage_class_manifest(params: CreateDefaultStorageClassParams) -> dict[str, Any]:
    return {
        "apiVersion": "storage.k8s.io/v1",
        "kind": "StorageClass",
        "metadata": {
            "name": params.name,
            "annotations": {DEFAULT_CLASS_ANNOTATION: "true"},
        },
        "provisioner": params.provisioner,
        "reclaimPolicy": params.reclaim_policy,
        "volumeBindingMode": "WaitForFirstConsumer",
    }


class CreateDefaultStorageClass:
    name = "CreateDefaultStorageClass"

    def __init__(self, *, kube_client_factory: Callable[[bytes], KubeClient] = KubeClient) -> None:
        self._kube_client_factory = kube_client_factory

    def __call__(self, cluster: ClusterHandle, params: RawHookParams) -> None:
        bound = run_step(
            HookStage.BIND, "failed to cast posthook param", bind, params, CreateDefaultStorageClassParams
        )
        kubeconfig = run_step(HookStage.CLIENT, "failed to get kubeconfig", cluster.get_kubeconfig)
        kube = run_step(
            HookStage.CLIENT, "failed to create client from kubeconfig", self._kube_client_factory, kubeconfig
        )
        with kube:
            run_step(
                HookStage.DEPLOY,
                "failed to create default storage class",
                kube.apply_manifests,
                [storage_class_manifest(bound)],
            )
        logger.info("Default storage class %s created on cluster %s", bound.name, cluster.name)
