"""The post hook contract.

A hook is any object with a ``name`` that can be called with the handle of a
freshly provisioned cluster and the raw parameters attached to the
provisioning request. It returns ``None`` on success and raises
:class:`~clusterhooks.services.errors.HookError` on failure.

Hook bodies are written as a sequence of :func:`run_step` calls. Each step
names the stage it belongs to and the message used to wrap its failure; the
stage decides through ``STAGE_SEVERITY`` whether the failure aborts the hook or
is logged and skipped.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Mapping, Protocol, TypeVar

import yaml

from clusterhooks.services.errors import HookStage, UnknownHookError, error_for_stage

logger = logging.getLogger(__name__)

T = TypeVar("T")

RawHookParams = Mapping[str, Any] | None


class ClusterHandle(Protocol):
    """What a hook may see and change of the cluster it runs against."""

    @property
    def cluster_id(self) -> int: ...

    @property
    def name(self) -> str: ...

    def get_pod_and_service_cidrs(self) -> tuple[str, str]: ...

    def get_kubeconfig(self) -> bytes: ...

    def is_monitoring_enabled(self) -> bool: ...

    def is_mesh_enabled(self) -> bool: ...

    def set_mesh_enabled(self, enabled: bool) -> None: ...


class Hook(Protocol):
    name: str

    def __call__(self, cluster: ClusterHandle, params: RawHookParams) -> None: ...


def render_values(values: Mapping[str, Any]) -> bytes:
    """Serialize a chart values document the way helm reads it."""
    return yaml.safe_dump(dict(values), sort_keys=False).encode("utf-8")


def run_step(stage: HookStage, message: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T | None:
    try:
        return fn(*args, **kwargs)
    except Exception as exc:
        error = error_for_stage(stage, message)
        if error.fatal:
            raise error from exc
        logger.warning("%s (%s)", message, exc)
        return None


class HookRegistry:
    """Hooks addressable by name, in registration order."""

    def __init__(self, hooks: Iterable[Hook] = ()) -> None:
        self._hooks: dict[str, Hook] = {}
        for hook in hooks:
            self.register(hook)

    def register(self, hook: Hook) -> None:
        if hook.name in self._hooks:
            raise ValueError(f"posthook {hook.name!r} is already registered")
        self._hooks[hook.name] = hook

    def get(self, name: str) -> Hook:
        try:
            return self._hooks[name]
        except KeyError:
            raise UnknownHookError(f"unknown posthook {name!r}") from None

    def names(self) -> list[str]:
        return list(self._hooks)

    def __contains__(self, name: object) -> bool:
        return name in self._hooks
