import importlib

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session
from starlette.testclient import TestClient
from typer.testing import CliRunner

from clusterhooks.api.clusters import get_runner
from clusterhooks.db import get_session, init_db
from clusterhooks.main import app
from clusterhooks.services.runner import HookRunner, build_registry
from tests.hook_fakes import SETTINGS, FakeInvoker, FakeKubeFactory


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


@pytest.fixture
def db_session(db_engine):
    with Session(db_engine) as session:
        yield session


@pytest.fixture
def invoker() -> FakeInvoker:
    return FakeInvoker()


@pytest.fixture
def kube_factory() -> FakeKubeFactory:
    return FakeKubeFactory()


@pytest.fixture
def runner(invoker, kube_factory) -> HookRunner:
    return HookRunner(build_registry(SETTINGS, invoker=invoker, kube_client_factory=kube_factory))


@pytest.fixture()
def cli_runner(tmp_path, monkeypatch, runner):
    db_path = tmp_path / "test_cli.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")

    import clusterhooks.db as db

    importlib.reload(db)
    init_db(db.engine)

    import clusterhooks.cli as cli

    importlib.reload(cli)
    monkeypatch.setattr(cli, "_build_runner", lambda: runner)

    return CliRunner(), cli.app


@pytest.fixture
def client(monkeypatch, db_engine, db_session, runner):
    import clusterhooks.db as db

    monkeypatch.setattr(db, "engine", db_engine)

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_session] = override_get_db
    app.dependency_overrides[get_runner] = lambda: runner

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
