from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from clusterhooks.config import Settings
from clusterhooks.db import get_session
from clusterhooks.models import (
    ClusterCreate,
    ClusterNetworkUpdate,
    ClusterRead,
    PostHookRunCreate,
    PostHookRunRead,
)
from clusterhooks.services import clusters as cluster_service
from clusterhooks.services.runner import HookRunner, build_registry, parse_event

router = APIRouter(prefix="/clusters", tags=["clusters"])


def get_runner() -> HookRunner:
    return HookRunner(build_registry(Settings.from_env()))


@router.post("", response_model=ClusterRead, status_code=status.HTTP_201_CREATED)
def create_cluster(payload: ClusterCreate, session: Session = Depends(get_session)) -> ClusterRead:
    return cluster_service.create_cluster(session, payload)


@router.get("", response_model=list[ClusterRead])
def list_clusters(session: Session = Depends(get_session)) -> list[ClusterRead]:
    return cluster_service.list_clusters(session)


@router.get("/{cluster_id}", response_model=ClusterRead)
def get_cluster(cluster_id: int, session: Session = Depends(get_session)) -> ClusterRead:
    return cluster_service.get_cluster(session, cluster_id=cluster_id)


@router.delete("/{cluster_id}", status_code=204)
def delete_cluster(cluster_id: int, session: Session = Depends(get_session)) -> None:
    cluster_service.delete_cluster(session, cluster_id=cluster_id)


@router.put("/{cluster_id}/network", response_model=ClusterRead)
def update_network(
    cluster_id: int, payload: ClusterNetworkUpdate, session: Session = Depends(get_session)
) -> ClusterRead:
    return cluster_service.update_cluster_network(session, cluster_id=cluster_id, network=payload)


@router.post("/{cluster_id}/posthooks", response_model=PostHookRunRead)
def run_posthooks(
    cluster_id: int,
    payload: PostHookRunCreate,
    session: Session = Depends(get_session),
    runner: HookRunner = Depends(get_runner),
) -> PostHookRunRead:
    event = parse_event(cluster_id, payload.model_dump())
    result = cluster_service.run_posthooks(session, cluster_id=cluster_id, event=event, runner=runner)
    return PostHookRunRead.model_validate(result.to_dict())
