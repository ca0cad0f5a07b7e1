from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Mapping

import yaml

from clusterhooks.config import Settings
from clusterhooks.provisioner import DeploymentInvoker, HelmDeploymentInvoker, KubeClient
from clusterhooks.services.errors import HookError, HookStage, InvalidEventException
from clusterhooks.services.hooks import ClusterHandle, HookRegistry
from clusterhooks.services.ingress import InstallIngressController
from clusterhooks.services.istio import InstallServiceMesh
from clusterhooks.services.storage import CreateDefaultStorageClass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HookInvocation:
    name: str
    params: Any = None

    def __post_init__(self) -> None:
        # a private copy so the event cannot change once the runner has it
        params = deepcopy(self.params)
        if isinstance(params, Mapping):
            params = MappingProxyType(dict(params))
        object.__setattr__(self, "params", params)


@dataclass(frozen=True)
class ProvisioningEvent:
    cluster_id: int
    hooks: tuple[HookInvocation, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "hooks", tuple(self.hooks))


@dataclass(frozen=True)
class HookOutcome:
    hook: str
    error: HookError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class RunResult:
    cluster_id: int
    outcomes: tuple[HookOutcome, ...] = ()
    failed_hook: str | None = None
    error: HookError | None = None
    skipped: tuple[str, ...] = field(default=())

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "ok": self.ok,
            "outcomes": [
                {
                    "hook": outcome.hook,
                    "ok": outcome.ok,
                    "stage": outcome.error.stage.value if outcome.error else None,
                    "severity": outcome.error.severity if outcome.error else None,
                    "error": str(outcome.error) if outcome.error else None,
                }
                for outcome in self.outcomes
            ],
            "failed_hook": self.failed_hook,
            "error": str(self.error) if self.error else None,
            "skipped": list(self.skipped),
        }


def parse_event(cluster_id: int, document: Any) -> ProvisioningEvent:
    """Build an event from ``{"postHooks": [...]}`` or ``{"postHooks": {name: params}}``."""
    if not isinstance(document, Mapping):
        raise InvalidEventException("posthook document must be a mapping")
    hooks = document.get("postHooks")
    if hooks is None:
        raise InvalidEventException("posthook document must define 'postHooks'")

    if isinstance(hooks, Mapping):
        return ProvisioningEvent(
            cluster_id=cluster_id,
            hooks=tuple(HookInvocation(name=str(name), params=params) for name, params in hooks.items()),
        )
    if not isinstance(hooks, list):
        raise InvalidEventException("'postHooks' must be a list or a mapping")

    invocations = []
    for index, entry in enumerate(hooks):
        if isinstance(entry, str):
            invocations.append(HookInvocation(name=entry))
            continue
        if not isinstance(entry, Mapping) or not isinstance(entry.get("name"), str):
            raise InvalidEventException(f"postHooks[{index}] must be a hook name or have a string 'name'")
        invocations.append(HookInvocation(name=entry["name"], params=entry.get("params")))
    return ProvisioningEvent(cluster_id=cluster_id, hooks=tuple(invocations))


def load_event(cluster_id: int, path: Path) -> ProvisioningEvent:
    try:
        document = yaml.safe_load(path.read_text())
    except OSError as exc:
        raise InvalidEventException(f"Unable to read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise InvalidEventException(f"Invalid YAML in {path}: {exc}") from exc
    return parse_event(cluster_id, document)


class HookRunner:
    """Run the hooks of a provisioning event one after another.

    The first fatal error stops the run. Effects of hooks that already ran are
    kept, deployments are not transactional.
    """

    def __init__(self, registry: HookRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> HookRegistry:
        return self._registry

    def run(self, event: ProvisioningEvent, cluster: ClusterHandle) -> RunResult:
        names = [invocation.name for invocation in event.hooks]
        outcomes: list[HookOutcome] = []
        for index, invocation in enumerate(event.hooks):
            logger.info(
                "Running posthook %s (%d/%d) for cluster %s",
                invocation.name,
                index + 1,
                len(event.hooks),
                event.cluster_id,
            )
            try:
                hook = self._registry.get(invocation.name)
                hook(cluster, invocation.params)
            except HookError as exc:
                error = exc
            except Exception as exc:
                error = HookError(f"posthook {invocation.name} failed", stage=HookStage.RUN)
                error.__cause__ = exc
            else:
                logger.info("Finished posthook %s for cluster %s", invocation.name, event.cluster_id)
                outcomes.append(HookOutcome(hook=invocation.name))
                continue

            outcomes.append(HookOutcome(hook=invocation.name, error=error))
            if error.fatal:
                logger.error(
                    "Posthook %s failed for cluster %s at stage %s: %s",
                    invocation.name,
                    event.cluster_id,
                    error.stage.value,
                    error,
                )
                return RunResult(
                    cluster_id=event.cluster_id,
                    outcomes=tuple(outcomes),
                    failed_hook=invocation.name,
                    error=error,
                    skipped=tuple(names[index + 1:]),
                )
            logger.warning("Posthook %s degraded for cluster %s: %s", invocation.name, event.cluster_id, error)

        return RunResult(cluster_id=event.cluster_id, outcomes=tuple(outcomes))


def build_registry(
    settings: Settings,
    *,
    invoker: DeploymentInvoker | None = None,
    kube_client_factory: Callable[[bytes], KubeClient] = KubeClient,
) -> HookRegistry:
    invoker = invoker or HelmDeploymentInvoker(timeout=settings.helm_timeout)
    return HookRegistry(
        [
            InstallServiceMesh(settings=settings, invoker=invoker, kube_client_factory=kube_client_factory),
            InstallIngressController(settings=settings, invoker=invoker),
            CreateDefaultStorageClass(kube_client_factory=kube_client_factory),
        ]
    )
