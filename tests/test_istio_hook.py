from __future__ import annotations

import logging

import pytest
import yaml

from clusterhooks.proc import AdapterCommandError, CommandResult
from clusterhooks.services.errors import (
    BindingError,
    ClientConstructionError,
    DeploymentError,
    IntegrationRegistrationError,
    LabelingError,
)
from clusterhooks.services.istio import (
    ISTIO_NAMESPACE,
    InstallServiceMesh,
    InstallServiceMeshParams,
    build_mesh_config,
    grafana_dashboard_manifests,
    prometheus_target_manifests,
)
from tests.hook_fakes import KUBECONFIG, SETTINGS, FakeCluster, FakeInvoker, FakeKubeFactory


@pytest.fixture
def hook(invoker: FakeInvoker, kube_factory: FakeKubeFactory) -> InstallServiceMesh:
    return InstallServiceMesh(settings=SETTINGS, invoker=invoker, kube_client_factory=kube_factory)


def _values(invoker: FakeInvoker) -> dict:
    assert len(invoker.calls) == 1
    return yaml.safe_load(invoker.specs[0].values)


def test_mtls_without_monitoring_installs_and_marks_mesh_enabled(hook, invoker, kube_factory) -> None:
    cluster = FakeCluster(monitoring=False)

    hook(cluster, {"mtls": True})

    spec = invoker.specs[0]
    assert _values(invoker) == {"global": {"mtls": {"enabled": True}}}
    assert spec.chart_ref == "banzaicloud-stable/istio"
    assert spec.release_name == "istio"
    assert spec.namespace == ISTIO_NAMESPACE
    assert spec.version == SETTINGS.istio_chart_version
    assert spec.wait is False
    assert kube_factory.kubeconfigs == [KUBECONFIG]
    assert kube_factory.kube.calls_named("label_namespace") == []
    assert kube_factory.kube.calls_named("apply_manifests") == []
    assert kube_factory.kube.closed is True
    assert cluster.mesh is True


def test_bypass_egress_sets_included_ip_ranges(hook, invoker) -> None:
    cluster = FakeCluster(cidrs=("10.0.0.0/16", "10.1.0.0/16"))

    hook(cluster, {"bypassEgressTraffic": True})

    assert _values(invoker)["global"]["proxy"] == {"includeIPRanges": "10.0.0.0/16,10.1.0.0/16"}


def test_cidr_lookup_failure_degrades_and_still_deploys(hook, invoker, caplog) -> None:
    cluster = FakeCluster(cidrs=None)

    with caplog.at_level(logging.WARNING):
        hook(cluster, {"bypassEgressTraffic": True, "mtls": False})

    values = _values(invoker)
    assert "proxy" not in values["global"]
    assert values == {"global": {"mtls": {"enabled": False}}}
    assert cluster.mesh is True
    assert "external requests will be intercepted" in caplog.text


def test_cidrs_are_not_queried_without_bypass(hook, invoker) -> None:
    cluster = FakeCluster(cidrs=None)
    hook(cluster, {})
    assert "proxy" not in _values(invoker)["global"]


def test_binding_error_aborts_before_deployment(hook, invoker, kube_factory) -> None:
    cluster = FakeCluster()

    with pytest.raises(BindingError) as exc_info:
        hook(cluster, {"mtls": "yes"})

    assert str(exc_info.value).startswith("failed to cast posthook param: ")
    assert isinstance(exc_info.value.cause, BindingError)
    assert invoker.calls == []
    assert kube_factory.kubeconfigs == []
    assert cluster.mesh is False


def test_deployment_failure_leaves_mesh_disabled_and_skips_labeling(hook, invoker, kube_factory) -> None:
    cluster = FakeCluster()
    invoker.raise_on_install = RuntimeError("helm exploded")

    with pytest.raises(DeploymentError) as exc_info:
        hook(cluster, {"autoSidecarInjectNamespaces": ["default"]})

    assert str(exc_info.value) == "installing mesh failed: helm exploded"
    assert isinstance(exc_info.value.root_cause(), RuntimeError)
    assert kube_factory.kubeconfigs == []
    assert cluster.mesh is False
    assert cluster.mesh_writes == []


def test_deployment_error_keeps_adapter_category() -> None:
    failing = FakeInvoker()
    failing.raise_on_install = AdapterCommandError(
        message="Failed to upgrade/install release istio",
        result=CommandResult(command=["helm"], returncode=1, stdout="", stderr="context deadline exceeded"),
        category="retryable",
    )
    hook = InstallServiceMesh(settings=SETTINGS, invoker=failing, kube_client_factory=FakeKubeFactory())

    with pytest.raises(DeploymentError) as exc_info:
        hook(FakeCluster(), None)

    assert exc_info.value.cause.retryable is True


def test_labels_every_configured_namespace(hook, kube_factory) -> None:
    cluster = FakeCluster()

    hook(cluster, {"autoSidecarInjectNamespaces": ["default", "apps"]})

    assert kube_factory.kube.calls_named("label_namespace") == [
        {"name": "default", "key": "istio-injection", "value": "enabled"},
        {"name": "apps", "key": "istio-injection", "value": "enabled"},
    ]
    assert cluster.mesh is True


def test_labeling_failure_is_fatal(hook, kube_factory) -> None:
    cluster = FakeCluster()
    kube_factory.kube.raise_on_label = RuntimeError("forbidden")

    with pytest.raises(LabelingError, match="failed to label namespace: forbidden"):
        hook(cluster, {"autoSidecarInjectNamespaces": ["default"]})

    assert cluster.mesh is False
    assert kube_factory.kube.closed is True


def test_kubeconfig_failure_is_fatal(hook, invoker) -> None:
    cluster = FakeCluster(kubeconfig=None)

    with pytest.raises(ClientConstructionError, match="failed to get kubeconfig"):
        hook(cluster, {})

    assert len(invoker.calls) == 1
    assert cluster.mesh is False


def test_client_construction_failure_is_fatal(hook, kube_factory) -> None:
    cluster = FakeCluster()
    kube_factory.raise_on_create = ValueError("kubeconfig does not define any clusters")

    with pytest.raises(ClientConstructionError, match="failed to create client from kubeconfig"):
        hook(cluster, {})

    assert cluster.mesh is False


def test_monitoring_registers_targets_then_dashboards(hook, kube_factory) -> None:
    cluster = FakeCluster(monitoring=True)

    hook(cluster, {})

    applied = kube_factory.kube.calls_named("apply_manifests")
    assert len(applied) == 2
    assert [m["metadata"]["name"] for m in applied[0]["manifests"]] == ["istio-prometheus-targets"]
    dashboards = applied[1]["manifests"]
    assert dashboards
    assert all(m["metadata"]["labels"]["grafana_dashboard"] == "1" for m in dashboards)
    assert cluster.mesh is True


def test_prometheus_target_failure_skips_dashboards(hook, kube_factory) -> None:
    cluster = FakeCluster(monitoring=True)
    kube_factory.kube.raise_on_apply["istio-prometheus-targets"] = RuntimeError("no prometheus")

    with pytest.raises(IntegrationRegistrationError, match="failed to add prometheus targets"):
        hook(cluster, {})

    assert len(kube_factory.kube.calls_named("apply_manifests")) == 1
    assert cluster.mesh is False


def test_dashboard_failure_is_fatal(hook, kube_factory) -> None:
    cluster = FakeCluster(monitoring=True)
    kube_factory.kube.raise_on_apply["istio-mesh-dashboard"] = RuntimeError("no grafana")

    with pytest.raises(IntegrationRegistrationError, match="failed to add grafana dashboards"):
        hook(cluster, {})

    assert cluster.mesh is False


def test_rerun_against_installed_cluster_is_idempotent(hook, invoker) -> None:
    cluster = FakeCluster()
    params = {"mtls": True, "autoSidecarInjectNamespaces": ["default"]}

    hook(cluster, params)
    hook(cluster, params)

    assert len(invoker.calls) == 2
    assert invoker.specs[0] == invoker.specs[1]
    assert cluster.mesh is True
    assert cluster.mesh_writes == [True, True]


def test_build_mesh_config_without_ranges_has_no_proxy() -> None:
    config = build_mesh_config(InstallServiceMeshParams(enable_mtls=True))
    assert config == {"global": {"mtls": {"enabled": True}}}


def test_integration_manifests_target_monitoring_namespace() -> None:
    for manifest in prometheus_target_manifests(monitoring_namespace="monitoring") + grafana_dashboard_manifests(
        monitoring_namespace="monitoring"
    ):
        assert manifest["kind"] == "ConfigMap"
        assert manifest["metadata"]["namespace"] == "monitoring"

    scrape_configs = yaml.safe_load(
        prometheus_target_manifests(monitoring_namespace="monitoring")[0]["data"]["istio.yaml"]
    )
    assert {config["job_name"] for config in scrape_configs} >= {"istio-mesh", "pilot"}
