from __future__ import annotations

from enum import Enum
from typing import Literal

Severity = Literal["recoverable", "fatal"]


class ClusterHooksException(Exception):
    pass


class IntegrityException(ClusterHooksException):
    pass


class NotFoundException(ClusterHooksException):
    pass


class ConfigurationException(ClusterHooksException):
    pass


class InvalidEventException(ClusterHooksException):
    pass


class ClusterStateException(ClusterHooksException):
    """The cluster record lacks something a hook asked for (CIDRs, kubeconfig)."""


class HookStage(str, Enum):
    RESOLVE = "resolve"
    BIND = "bind"
    DERIVE_CONFIG = "derive-config"
    SERIALIZE = "serialize"
    DEPLOY = "deploy"
    CLIENT = "client"
    LABEL = "label"
    INTEGRATE = "integrate"
    RECORD = "record"
    RUN = "run"


# Only derived configuration may degrade; every other stage aborts the hook.
STAGE_SEVERITY: dict[HookStage, Severity] = {
    HookStage.RESOLVE: "fatal",
    HookStage.BIND: "fatal",
    HookStage.DERIVE_CONFIG: "recoverable",
    HookStage.SERIALIZE: "fatal",
    HookStage.DEPLOY: "fatal",
    HookStage.CLIENT: "fatal",
    HookStage.LABEL: "fatal",
    HookStage.INTEGRATE: "fatal",
    HookStage.RECORD: "fatal",
    HookStage.RUN: "fatal",
}


class HookError(ClusterHooksException):
    """Failure of one hook step, tagged with the stage it happened in.

    The message names the phase ("installing mesh failed"); the original
    exception is kept as ``__cause__`` and appended to ``str()``.
    """

    stage: HookStage = HookStage.RESOLVE

    def __init__(self, message: str, *, stage: HookStage | None = None) -> None:
        super().__init__(message)
        self.message = message
        if stage is not None:
            self.stage = stage

    @property
    def severity(self) -> Severity:
        return STAGE_SEVERITY[self.stage]

    @property
    def fatal(self) -> bool:
        return self.severity == "fatal"

    @property
    def cause(self) -> BaseException | None:
        return self.__cause__

    def root_cause(self) -> BaseException:
        current: BaseException = self
        while current.__cause__ is not None:
            current = current.__cause__
        return current

    def __str__(self) -> str:
        if self.__cause__ is None:
            return self.message
        return f"{self.message}: {self.__cause__}"


class UnknownHookError(HookError):
    stage = HookStage.RESOLVE


class BindingError(HookError):
    stage = HookStage.BIND


class DependencyLookupError(HookError):
    stage = HookStage.DERIVE_CONFIG


class SerializationError(HookError):
    stage = HookStage.SERIALIZE


class DeploymentError(HookError):
    stage = HookStage.DEPLOY


class ClientConstructionError(HookError):
    stage = HookStage.CLIENT


class LabelingError(HookError):
    stage = HookStage.LABEL


class IntegrationRegistrationError(HookError):
    stage = HookStage.INTEGRATE


_ERRORS_BY_STAGE: dict[HookStage, type[HookError]] = {
    HookStage.RESOLVE: UnknownHookError,
    HookStage.BIND: BindingError,
    HookStage.DERIVE_CONFIG: DependencyLookupError,
    HookStage.SERIALIZE: SerializationError,
    HookStage.DEPLOY: DeploymentError,
    HookStage.CLIENT: ClientConstructionError,
    HookStage.LABEL: LabelingError,
    HookStage.INTEGRATE: IntegrationRegistrationError,
}


def error_for_stage(stage: HookStage, message: str) -> HookError:
    return _ERRORS_BY_STAGE.get(stage, HookError)(message, stage=stage)
