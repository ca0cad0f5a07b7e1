from __future__ import annotations

from dataclasses import dataclass
import os

from clusterhooks.services.errors import ConfigurationException


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationException(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ConfigurationException(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    """Options the post hooks depend on, resolved once and handed to each hook."""

    chart_repository: str = "banzaicloud-stable"
    istio_chart_version: str = "1.1.0"
    ingress_chart_version: str = "1.64.0"
    system_namespace: str = "pipeline-system"
    monitoring_namespace: str = "pipeline-system"
    helm_timeout: int = 300

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            chart_repository=os.getenv("CLUSTERHOOKS_CHART_REPOSITORY", defaults.chart_repository),
            istio_chart_version=os.getenv("CLUSTERHOOKS_ISTIO_CHART_VERSION", defaults.istio_chart_version),
            ingress_chart_version=os.getenv("CLUSTERHOOKS_INGRESS_CHART_VERSION", defaults.ingress_chart_version),
            system_namespace=os.getenv("CLUSTERHOOKS_SYSTEM_NAMESPACE", defaults.system_namespace),
            monitoring_namespace=os.getenv("CLUSTERHOOKS_MONITORING_NAMESPACE", defaults.monitoring_namespace),
            helm_timeout=_env_int("CLUSTERHOOKS_HELM_TIMEOUT", defaults.helm_timeout),
        )

    def chart(self, name: str) -> str:
        return f"{self.chart_repository}/{name}"
