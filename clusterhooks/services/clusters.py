from __future__ import annotations

from datetime import datetime
import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from clusterhooks.models import (
    CLUSTER_STATUS_ERROR,
    CLUSTER_STATUS_READY,
    CLUSTER_STATUS_RUNNING,
    ClusterCreate,
    ClusterNetworkUpdate,
    ClusterORM,
    ClusterRead,
)
from clusterhooks.provisioner import load_kubeconfig
from clusterhooks.services.errors import (
    ClusterStateException,
    IntegrityException,
    NotFoundException,
)
from clusterhooks.services.runner import HookRunner, ProvisioningEvent, RunResult

logger = logging.getLogger(__name__)


class StoredCluster:
    """Cluster handle backed by a cluster row.

    Owned by a single post hook run; the mesh flag is committed as soon as a
    hook records it.
    """

    def __init__(self, session: Session, cluster: ClusterORM) -> None:
        self._session = session
        self._cluster = cluster

    @property
    def cluster_id(self) -> int:
        return self._cluster.id

    @property
    def name(self) -> str:
        return self._cluster.name

    def get_pod_and_service_cidrs(self) -> tuple[str, str]:
        if not self._cluster.pod_cidr or not self._cluster.service_cidr:
            raise ClusterStateException(f"cluster {self.name} has no pod/service CIDR ranges recorded")
        return self._cluster.pod_cidr, self._cluster.service_cidr

    def get_kubeconfig(self) -> bytes:
        if not self._cluster.kubeconfig:
            raise ClusterStateException(f"cluster {self.name} has no kubeconfig")
        return self._cluster.kubeconfig.encode("utf-8")

    def is_monitoring_enabled(self) -> bool:
        return bool(self._cluster.monitoring)

    def is_mesh_enabled(self) -> bool:
        return bool(self._cluster.service_mesh)

    def set_mesh_enabled(self, enabled: bool) -> None:
        self._cluster.service_mesh = enabled
        self._session.add(self._cluster)
        self._session.commit()
        self._session.refresh(self._cluster)
        logger.info("Recorded service_mesh=%s for cluster %s", enabled, self.name)


def _get_cluster_orm(session: Session, cluster_id: int) -> ClusterORM:
    if not (cluster := session.exec(
            select(ClusterORM).where(ClusterORM.id == cluster_id, ClusterORM.deleted_at == None)).one_or_none()):
        raise NotFoundException("Cluster not found")
    return cluster


def _validate_kubeconfig(kubeconfig: str | None) -> None:
    if kubeconfig is None:
        return
    try:
        load_kubeconfig(kubeconfig.encode("utf-8"))
    except ValueError as exc:
        raise IntegrityException(f"Invalid kubeconfig: {exc}") from exc


def create_cluster(session: Session, payload: ClusterCreate) -> ClusterRead:
    _validate_kubeconfig(payload.kubeconfig)
    cluster = ClusterORM.model_validate(payload)
    session.add(cluster)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise IntegrityException(f"A cluster with this name already exists: {payload.name}") from exc
    session.refresh(cluster)
    logger.info("Created cluster id=%s name=%s", cluster.id, cluster.name)
    return ClusterRead.model_validate(cluster)


def list_clusters(session: Session) -> list[ClusterRead]:
    return [ClusterRead.model_validate(c) for c in
            session.exec(select(ClusterORM).where(ClusterORM.deleted_at == None).order_by(ClusterORM.id)).all()]


def get_cluster(session: Session, *, cluster_id: int) -> ClusterRead:
    return ClusterRead.model_validate(_get_cluster_orm(session, cluster_id))


def delete_cluster(session: Session, *, cluster_id: int) -> ClusterRead:
    """Soft-delete a cluster; its name becomes available again."""
    cluster = _get_cluster_orm(session, cluster_id)
    cluster.deleted_at = datetime.utcnow()
    session.add(cluster)
    session.commit()
    session.refresh(cluster)
    logger.info("Deleted cluster id=%s", cluster_id)
    return ClusterRead.model_validate(cluster)


def update_cluster_network(session: Session, *, cluster_id: int, network: ClusterNetworkUpdate) -> ClusterRead:
    cluster = _get_cluster_orm(session, cluster_id)
    cluster.pod_cidr = network.pod_cidr
    cluster.service_cidr = network.service_cidr
    session.add(cluster)
    session.commit()
    session.refresh(cluster)
    return ClusterRead.model_validate(cluster)


def set_kubeconfig(session: Session, *, cluster_id: int, kubeconfig: str) -> ClusterRead:
    _validate_kubeconfig(kubeconfig)
    cluster = _get_cluster_orm(session, cluster_id)
    cluster.kubeconfig = kubeconfig
    session.add(cluster)
    session.commit()
    session.refresh(cluster)
    return ClusterRead.model_validate(cluster)


def run_posthooks(session: Session, *, cluster_id: int, event: ProvisioningEvent, runner: HookRunner) -> RunResult:
    """Run an event's post hooks against a cluster and record the outcome on it."""
    if event.cluster_id != cluster_id:
        raise IntegrityException(f"Event targets cluster {event.cluster_id}, not {cluster_id}")
    cluster = _get_cluster_orm(session, cluster_id)
    cluster.status = CLUSTER_STATUS_RUNNING
    cluster.status_message = None
    session.add(cluster)
    session.commit()
    session.refresh(cluster)

    result = runner.run(event, StoredCluster(session, cluster))

    cluster.status = CLUSTER_STATUS_READY if result.ok else CLUSTER_STATUS_ERROR
    cluster.status_message = None if result.ok else f"{result.failed_hook}: {result.error}"
    cluster.last_posthook_at = datetime.utcnow()
    session.add(cluster)
    session.commit()
    session.refresh(cluster)
    logger.info(
        "Finished posthooks for cluster id=%s status=%s hooks=%s",
        cluster_id,
        cluster.status,
        len(result.outcomes),
    )
    return result
