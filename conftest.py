"""Shared fixtures: both storage backends on throwaway files, and an API client.

Async code is driven with ``asyncio.run``; each test runs its whole
scenario inside one event loop.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine

from cafe_orders.adapters import NotifierStub, ProcessorStub
from cafe_orders.file_store import FileOrderStore
from cafe_orders.main import create_app
from cafe_orders.settings import Settings
from cafe_orders.sql_store import SqlOrderStore


@pytest.fixture
def file_store(tmp_path):
    store = FileOrderStore(tmp_path / "pedidos.json", tmp_path / "pedidos_archivados")
    asyncio.run(store.ensure_layout())
    return store


@pytest.fixture
def sql_store(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'orders.db'}", connect_args={"check_same_thread": False})
    store = SqlOrderStore(engine, timeout=5.0)
    store.create_schema()
    yield store
    engine.dispose()


@pytest.fixture(params=["file", "sql"])
def store(request):
    """Every contract test runs against both backends."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="",
        require_db=False,
        data_dir=tmp_path / "data",
        stripe_secret_key="",
        stripe_webhook_secret="",
        use_http_adapters=False,
    )


@pytest.fixture
def processor():
    return ProcessorStub()


@pytest.fixture
def notifier():
    return NotifierStub()


@pytest.fixture
def client(settings, processor, notifier):
    app = create_app(settings, processor=processor, notifier=notifier)
    with TestClient(app) as c:
        yield c
