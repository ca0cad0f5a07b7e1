from __future__ import annotations

import pytest
import yaml
from pydantic import ValidationError

from clusterhooks.models import ClusterCreate, ClusterNetworkUpdate, ClusterORM
from clusterhooks.services import clusters
from clusterhooks.services.errors import ClusterStateException, IntegrityException, NotFoundException
from clusterhooks.services.runner import HookInvocation, ProvisioningEvent
from tests.hook_fakes import KUBECONFIG


def _create(db_session, **overrides):
    payload = {
        "name": "demo",
        "pod_cidr": "10.0.0.0/16",
        "service_cidr": "10.1.0.0/16",
        "kubeconfig": KUBECONFIG.decode(),
    }
    payload.update(overrides)
    return clusters.create_cluster(db_session, ClusterCreate(**payload))


def test_create_get_list_delete(db_session) -> None:
    created = _create(db_session)

    assert created.status == "pending"
    assert created.service_mesh is False
    assert clusters.get_cluster(db_session, cluster_id=created.id).name == "demo"
    assert [c.id for c in clusters.list_clusters(db_session)] == [created.id]

    clusters.delete_cluster(db_session, cluster_id=created.id)
    assert clusters.list_clusters(db_session) == []
    with pytest.raises(NotFoundException):
        clusters.get_cluster(db_session, cluster_id=created.id)


def test_active_cluster_names_are_unique(db_session) -> None:
    first = _create(db_session)
    with pytest.raises(IntegrityException):
        _create(db_session)

    clusters.delete_cluster(db_session, cluster_id=first.id)
    assert _create(db_session).id != first.id


def test_invalid_kubeconfig_is_rejected(db_session) -> None:
    with pytest.raises(IntegrityException, match="Invalid kubeconfig"):
        _create(db_session, kubeconfig="kind: Config\n")


def test_cidrs_are_validated_and_normalised() -> None:
    with pytest.raises(ValidationError):
        ClusterCreate(name="x", pod_cidr="not-a-range")
    assert ClusterNetworkUpdate(pod_cidr="10.0.0.1/16", service_cidr="10.1.0.0/16").pod_cidr == "10.0.0.0/16"


def test_stored_cluster_reports_missing_state(db_session) -> None:
    created = _create(db_session, pod_cidr=None, service_cidr=None, kubeconfig=None)
    handle = clusters.StoredCluster(db_session, db_session.get(ClusterORM, created.id))

    with pytest.raises(ClusterStateException):
        handle.get_pod_and_service_cidrs()
    with pytest.raises(ClusterStateException):
        handle.get_kubeconfig()

    clusters.update_cluster_network(
        db_session,
        cluster_id=created.id,
        network=ClusterNetworkUpdate(pod_cidr="10.0.0.0/16", service_cidr="10.1.0.0/16"),
    )
    clusters.set_kubeconfig(db_session, cluster_id=created.id, kubeconfig=KUBECONFIG.decode())
    assert handle.get_pod_and_service_cidrs() == ("10.0.0.0/16", "10.1.0.0/16")
    assert handle.get_kubeconfig() == KUBECONFIG


def test_stored_cluster_persists_mesh_flag(db_session) -> None:
    created = _create(db_session)
    handle = clusters.StoredCluster(db_session, db_session.get(ClusterORM, created.id))

    handle.set_mesh_enabled(True)

    db_session.expire_all()
    assert db_session.get(ClusterORM, created.id).service_mesh is True
    assert handle.is_mesh_enabled() is True


def test_run_posthooks_marks_cluster_ready(db_session, runner, invoker) -> None:
    created = _create(db_session, monitoring=False)
    event = ProvisioningEvent(
        cluster_id=created.id,
        hooks=(HookInvocation(name="InstallServiceMesh", params={"mtls": True, "bypassEgressTraffic": True}),),
    )

    result = clusters.run_posthooks(db_session, cluster_id=created.id, event=event, runner=runner)

    cluster = clusters.get_cluster(db_session, cluster_id=created.id)
    assert result.ok
    assert cluster.status == "ready"
    assert cluster.status_message is None
    assert cluster.service_mesh is True
    assert cluster.last_posthook_at is not None
    values = yaml.safe_load(invoker.specs[0].values)
    assert values["global"]["proxy"]["includeIPRanges"] == "10.0.0.0/16,10.1.0.0/16"


def test_run_posthooks_records_failure(db_session, runner, invoker) -> None:
    created = _create(db_session)
    invoker.raise_on_install = RuntimeError("boom")
    event = ProvisioningEvent(cluster_id=created.id, hooks=(HookInvocation(name="InstallServiceMesh"),))

    result = clusters.run_posthooks(db_session, cluster_id=created.id, event=event, runner=runner)

    cluster = clusters.get_cluster(db_session, cluster_id=created.id)
    assert not result.ok
    assert cluster.status == "error"
    assert cluster.status_message == "InstallServiceMesh: installing mesh failed: boom"
    assert cluster.service_mesh is False


def test_run_posthooks_rejects_event_for_other_cluster(db_session, runner) -> None:
    created = _create(db_session)
    with pytest.raises(IntegrityException):
        clusters.run_posthooks(
            db_session, cluster_id=created.id, event=ProvisioningEvent(cluster_id=created.id + 1), runner=runner
        )
