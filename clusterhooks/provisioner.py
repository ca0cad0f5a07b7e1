from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Protocol

import yaml

from clusterhooks.proc import AdapterCommandError, CommandRunner, run_command

logger = logging.getLogger(__name__)


class KubeconfigSource(Protocol):
    def get_kubeconfig(self) -> bytes: ...


@dataclass(frozen=True)
class NamespaceResult:
    name: str
    exists: bool
    changed: bool


@dataclass(frozen=True)
class HelmReleaseOperationResult:
    release_name: str
    namespace: str
    changed: bool
    status: str | None = None
    revision: int | None = None


@dataclass(frozen=True)
class HelmReleaseStatusResult:
    release_name: str
    namespace: str
    exists: bool
    status: str | None = None
    revision: int | None = None


@dataclass(frozen=True)
class DeploymentSpec:
    chart_ref: str
    release_name: str
    namespace: str
    values: bytes
    version: str
    wait: bool = False


class _temp_file:
    def __init__(self, content: bytes, *, suffix: str) -> None:
        self._content = content
        self._suffix = suffix
        self.path: Path | None = None

    def __enter__(self) -> Path:
        with NamedTemporaryFile(mode="wb", suffix=self._suffix, delete=False) as tmp:
            tmp.write(self._content)
        self.path = Path(tmp.name)
        logger.debug("Wrote temporary file: %s", self.path)
        return self.path

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.path and self.path.exists():
            self.path.unlink()
            logger.debug("Removed temporary file: %s", self.path)


def load_kubeconfig(kubeconfig: bytes) -> dict[str, Any]:
    """Parse a kubeconfig document, raising ValueError when it is unusable."""
    try:
        document = yaml.safe_load(kubeconfig)
    except yaml.YAMLError as exc:
        raise ValueError(f"kubeconfig is not valid YAML: {exc}") from exc
    if not isinstance(document, dict):
        raise ValueError("kubeconfig must be a mapping")
    if not document.get("clusters"):
        raise ValueError("kubeconfig does not define any clusters")
    return document


class KubeAdapter:
    """Adapter for the kubectl operations post hooks perform on a cluster."""

    def __init__(self, *, kubeconfig: Path | None = None, runner: CommandRunner | None = None) -> None:
        self._kubeconfig = kubeconfig
        self._runner = runner

    def _kubectl(self, *args: str) -> list[str]:
        cmd = ["kubectl"]
        if self._kubeconfig is not None:
            cmd.extend(["--kubeconfig", str(self._kubeconfig)])
        cmd.extend(args)
        return cmd

    def ensure_namespace(self, name: str) -> NamespaceResult:
        if self.namespace_exists(name):
            logger.debug("Namespace already exists: %s", name)
            return NamespaceResult(name=name, exists=True, changed=False)

        run_command(
            self._kubectl("create", "namespace", name),
            runner=self._runner,
            error_message=f"Failed to create namespace {name}",
        )
        logger.info("Created namespace: %s", name)
        return NamespaceResult(name=name, exists=True, changed=True)

    def namespace_exists(self, name: str) -> bool:
        try:
            run_command(
                self._kubectl("get", "namespace", name, "-o", "name"),
                runner=self._runner,
                error_message=f"Failed to check namespace {name}",
            )
            return True
        except AdapterCommandError as exc:
            if exc.mentions("not found"):
                return False
            raise

    def label_namespace(self, name: str, *, key: str, value: str) -> None:
        run_command(
            self._kubectl("label", "namespace", name, f"{key}={value}", "--overwrite"),
            runner=self._runner,
            error_message=f"Failed to label namespace {name} with {key}={value}",
        )
        logger.info("Labelled namespace %s with %s=%s", name, key, value)

    def apply_manifests(self, manifests: list[dict[str, Any]]) -> None:
        document = yaml.safe_dump_all(manifests, sort_keys=False).encode("utf-8")
        names = ", ".join(f"{m.get('kind')}/{m.get('metadata', {}).get('name')}" for m in manifests)
        with _temp_file(document, suffix=".yaml") as manifest_file:
            run_command(
                self._kubectl("apply", "-f", str(manifest_file)),
                runner=self._runner,
                error_message=f"Failed to apply {names}",
            )
        logger.info("Applied %s", names)




class KubeClient(KubeAdapter):
    """KubeAdapter bound to a private copy of a cluster's kubeconfig.

    The kubeconfig is validated and written out on construction; ``close()``
    (or leaving the ``with`` block) removes the copy.
    """

    def __init__(self, kubeconfig: bytes, *, runner: CommandRunner | None = None) -> None:
        load_kubeconfig(kubeconfig)
        self._file = _temp_file(kubeconfig, suffix=".kubeconfig")
        super().__init__(kubeconfig=self._file.__enter__(), runner=runner)

    @property
    def kubeconfig_path(self) -> Path:
        return self._kubeconfig

    def close(self) -> None:
        self._file.__exit__(None, None, None)

    def __enter__(self) -> "KubeClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class HelmAdapter:
    """Adapter for Helm release operations."""

    def __init__(self, *, kubeconfig: Path | None = None, runner: CommandRunner | None = None) -> None:
        self._kubeconfig = kubeconfig
        self._runner = runner

    def _helm(self, *args: str) -> list[str]:
        cmd = ["helm", *args]
        if self._kubeconfig is not None:
            cmd.extend(["--kubeconfig", str(self._kubeconfig)])
        return cmd

    def helm_upgrade_install(
        self,
        *,
        release_name: str,
        namespace: str,
        chart_ref: str,
        chart_version: str,
        values: bytes,
        timeout: int,
        wait: bool,
    ) -> HelmReleaseOperationResult:
        logger.info(
            "Applying Helm release '%s' in namespace '%s' (chart=%s version=%s)",
            release_name,
            namespace,
            chart_ref,
            chart_version,
        )
        with _temp_file(values, suffix=".yaml") as values_file:
            cmd = self._helm(
                "upgrade",
                "--install",
                release_name,
                chart_ref,
                "--namespace",
                namespace,
                "--timeout",
                f"{timeout}s",
                "--values",
                str(values_file),
            )
            if chart_version:
                cmd.extend(["--version", chart_version])
            if wait:
                cmd.append("--wait")
            run_command(
                cmd,
                runner=self._runner,
                error_message=f"Failed to upgrade/install release {release_name}",
            )

        status = self.helm_get_release_status(release_name=release_name, namespace=namespace)
        return HelmReleaseOperationResult(
            release_name=release_name,
            namespace=namespace,
            changed=True,
            status=status.status,
            revision=status.revision,
        )

    def helm_get_release_status(self, *, release_name: str, namespace: str) -> HelmReleaseStatusResult:
        try:
            result = run_command(
                self._helm("status", release_name, "--namespace", namespace, "--output", "json"),
                runner=self._runner,
                error_message=f"Failed to fetch release status for {release_name}",
            )
        except AdapterCommandError as exc:
            if exc.mentions("not found"):
                return HelmReleaseStatusResult(release_name=release_name, namespace=namespace, exists=False)
            raise

        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON from helm status for release {release_name}") from exc

        info = payload.get("info", {}) if isinstance(payload, dict) else {}
        status = info.get("status") if isinstance(info, dict) else None
        revision = payload.get("version") if isinstance(payload, dict) else None
        return HelmReleaseStatusResult(
            release_name=release_name,
            namespace=namespace,
            exists=True,
            status=status if isinstance(status, str) else None,
            revision=revision if isinstance(revision, int) else None,
        )


class DeploymentInvoker(Protocol):
    def install(self, cluster: KubeconfigSource, spec: DeploymentSpec) -> HelmReleaseOperationResult: ...


class HelmDeploymentInvoker:
    """Install or upgrade a chart release on the cluster a hook runs against.

    The target namespace is created when missing, and ``helm upgrade
    --install`` makes repeated calls with the same DeploymentSpec converge on the same
    release.
    """

    def __init__(self, *, timeout: int = 300, runner: CommandRunner | None = None) -> None:
        self._timeout = timeout
        self._runner = runner

    def install(self, cluster: KubeconfigSource, spec: DeploymentSpec) -> HelmReleaseOperationResult:
        with KubeClient(cluster.get_kubeconfig(), runner=self._runner) as kube:
            kube.ensure_namespace(spec.namespace)
            return HelmAdapter(kubeconfig=kube.kubeconfig_path, runner=self._runner).helm_upgrade_install(
                release_name=spec.release_name,
                namespace=spec.namespace,
                chart_ref=spec.chart_ref,
                chart_version=spec.version,
                values=spec.values,
                timeout=self._timeout,
                wait=spec.wait,
            )
