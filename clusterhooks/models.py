from datetime import datetime
import ipaddress
from typing import Any, Optional

from pydantic import field_validator
from sqlalchemy import Column, Index, Text
from sqlmodel import Field, SQLModel

CLUSTER_STATUS_PENDING = "pending"
CLUSTER_STATUS_RUNNING = "running"
CLUSTER_STATUS_READY = "ready"
CLUSTER_STATUS_ERROR = "error"
CLUSTER_STATUSES = (
    CLUSTER_STATUS_PENDING,
    CLUSTER_STATUS_RUNNING,
    CLUSTER_STATUS_READY,
    CLUSTER_STATUS_ERROR,
)


def _validate_cidr(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    try:
        return str(ipaddress.ip_network(value, strict=False))
    except ValueError as exc:
        raise ValueError(f"invalid CIDR range: {value!r}") from exc


class ClusterBase(SQLModel):
    name: str
    cloud: str = "kubernetes"
    pod_cidr: Optional[str] = None
    service_cidr: Optional[str] = None
    monitoring: bool = False


class ClusterORM(ClusterBase, table=True):
    __tablename__ = "cluster"
    __table_args__ = (
        Index(
            "uq_cluster_name_active",
            "name",
            unique=True,
            sqlite_where=Column("deleted_at").is_(None),
            postgresql_where=Column("deleted_at").is_(None),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(nullable=False, index=True)
    kubeconfig: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    service_mesh: bool = Field(default=False, nullable=False)
    status: str = Field(default=CLUSTER_STATUS_PENDING, nullable=False, index=True)
    status_message: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    last_posthook_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    deleted_at: Optional[datetime] = Field(default=None)


class ClusterCreate(ClusterBase):
    kubeconfig: Optional[str] = None

    @field_validator("pod_cidr", "service_cidr")
    @classmethod
    def _cidr(cls, value: Optional[str]) -> Optional[str]:
        return _validate_cidr(value)


class ClusterNetworkUpdate(SQLModel):
    pod_cidr: str
    service_cidr: str

    @field_validator("pod_cidr", "service_cidr")
    @classmethod
    def _cidr(cls, value: str) -> str:
        return _validate_cidr(value)


class ClusterRead(ClusterBase):
    id: int
    service_mesh: bool
    status: str
    status_message: Optional[str] = None
    last_posthook_at: Optional[datetime] = None
    created_at: datetime


class HookInvocationCreate(SQLModel):
    name: str
    params: Optional[Any] = None


class PostHookRunCreate(SQLModel):
    postHooks: list[HookInvocationCreate]


class HookOutcomeRead(SQLModel):
    hook: str
    ok: bool
    stage: Optional[str] = None
    severity: Optional[str] = None
    error: Optional[str] = None


class PostHookRunRead(SQLModel):
    cluster_id: int
    ok: bool
    outcomes: list[HookOutcomeRead]
    failed_hook: Optional[str] = None
    error: Optional[str] = None
    skipped: list[str] = []
