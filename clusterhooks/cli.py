from __future__ import annotations

import logging
from pathlib import Path

import typer
import yaml
from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError

from clusterhooks.config import Settings
from clusterhooks.db import engine, init_db, session_scope
from clusterhooks.logging_config import configure_logging
from clusterhooks.models import ClusterCreate, ClusterNetworkUpdate
from clusterhooks.services import clusters as cluster_service
from clusterhooks.services.errors import ClusterHooksException
from clusterhooks.services.runner import HookRunner, build_registry, load_event

configure_logging()
init_db(engine)
logger = logging.getLogger(__name__)
app = typer.Typer(help="Cluster post hooks CLI", pretty_exceptions_show_locals=False)


def _build_runner() -> HookRunner:
    return HookRunner(build_registry(Settings.from_env()))


def _exit_for_domain_error(exc: ClusterHooksException) -> None:
    logger.warning("CLI command failed with domain error: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1)


def _exit_for_invalid_input(exc: ValidationError | ValueError) -> None:
    logger.warning("Invalid CLI input: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1)


def _echo_yaml_entity(entity: object) -> None:
    encoded = jsonable_encoder(entity)
    typer.echo(yaml.safe_dump(encoded, sort_keys=False), nl=False)


def _read_kubeconfig(path: Path | None) -> str | None:
    if path is None:
        return None
    try:
        return path.read_text()
    except OSError as exc:
        raise ValueError(f"Unable to read --kubeconfig: {exc}") from exc


@app.command("create-cluster")
def create_cluster(
    name: str,
    *,
    cloud: str = typer.Option("kubernetes", "--cloud"),
    pod_cidr: str | None = typer.Option(None, "--pod-cidr", help="Pod network range, e.g. 10.0.0.0/16."),
    service_cidr: str | None = typer.Option(None, "--service-cidr", help="Service network range."),
    monitoring: bool = typer.Option(False, "--monitoring/--no-monitoring"),
    kubeconfig: Path | None = typer.Option(None, "--kubeconfig", help="Path to the cluster's kubeconfig."),
) -> None:
    try:
        payload = ClusterCreate(
            name=name,
            cloud=cloud,
            pod_cidr=pod_cidr,
            service_cidr=service_cidr,
            monitoring=monitoring,
            kubeconfig=_read_kubeconfig(kubeconfig),
        )
    except (ValidationError, ValueError) as e:
        _exit_for_invalid_input(e)

    with session_scope() as session:
        try:
            cluster = cluster_service.create_cluster(session, payload)
        except ClusterHooksException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(cluster)


@app.command("list-clusters")
def list_clusters() -> None:
    with session_scope() as session:
        _echo_yaml_entity(cluster_service.list_clusters(session))


@app.command("get-cluster")
def get_cluster(cluster_id: int) -> None:
    with session_scope() as session:
        try:
            cluster = cluster_service.get_cluster(session, cluster_id=cluster_id)
        except ClusterHooksException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(cluster)


@app.command("delete-cluster")
def delete_cluster(cluster_id: int) -> None:
    with session_scope() as session:
        try:
            cluster = cluster_service.delete_cluster(session, cluster_id=cluster_id)
        except ClusterHooksException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(cluster)


@app.command("set-network")
def set_network(
    cluster_id: int,
    *,
    pod_cidr: str = typer.Option(..., "--pod-cidr"),
    service_cidr: str = typer.Option(..., "--service-cidr"),
) -> None:
    try:
        network = ClusterNetworkUpdate(pod_cidr=pod_cidr, service_cidr=service_cidr)
    except ValidationError as e:
        _exit_for_invalid_input(e)

    with session_scope() as session:
        try:
            cluster = cluster_service.update_cluster_network(session, cluster_id=cluster_id, network=network)
        except ClusterHooksException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(cluster)


@app.command("set-kubeconfig")
def set_kubeconfig(cluster_id: int, kubeconfig: Path) -> None:
    try:
        content = _read_kubeconfig(kubeconfig)
    except ValueError as e:
        _exit_for_invalid_input(e)

    with session_scope() as session:
        try:
            cluster = cluster_service.set_kubeconfig(session, cluster_id=cluster_id, kubeconfig=content)
        except ClusterHooksException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(cluster)


@app.command("list-hooks")
def list_hooks() -> None:
    try:
        runner = _build_runner()
    except ClusterHooksException as e:
        _exit_for_domain_error(e)
    _echo_yaml_entity(runner.registry.names())


@app.command("run-posthooks")
def run_posthooks(
    cluster_id: int,
    event_file: Path = typer.Option(
        ..., "--event-file", help="YAML/JSON document with a 'postHooks' list or mapping."
    ),
) -> None:
    with session_scope() as session:
        try:
            event = load_event(cluster_id, event_file)
            result = cluster_service.run_posthooks(
                session, cluster_id=cluster_id, event=event, runner=_build_runner()
            )
        except ClusterHooksException as e:
            _exit_for_domain_error(e)

        if not result.ok:
            typer.echo(
                f"Error: Posthook {result.failed_hook} failed for cluster {cluster_id}: {result.error}",
                err=True,
            )
            raise typer.Exit(code=1)

        _echo_yaml_entity(result.to_dict())


def main() -> None:
    app()


if __name__ == "__main__":
    main()
