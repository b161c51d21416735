"""Unit tests for database configuration."""

from __future__ import annotations

import pytest

from ecommerce_datagen import db_config

pytestmark = pytest.mark.unit


@pytest.fixture
def db_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(db_config, "load_dotenv", lambda *args, **kwargs: False)
    monkeypatch.setenv("DB_HOST", "db.internal")
    monkeypatch.setenv("DB_PORT", "6543")
    monkeypatch.setenv("DB_NAME", "shop")
    monkeypatch.setenv("DB_USER", "loader")
    monkeypatch.setenv("DB_PASSWORD", "secret")


def test_params_from_environment(db_env: None) -> None:
    assert db_config.get_connection_params() == {
        "host": "db.internal",
        "port": 6543,
        "dbname": "shop",
        "user": "loader",
        "password": "secret",
    }


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(db_config, "load_dotenv", lambda *args, **kwargs: False)
    for name in ("DB_HOST", "DB_PORT", "DB_NAME", "DB_USER", "DB_PASSWORD"):
        monkeypatch.delenv(name, raising=False)

    params = db_config.get_connection_params()

    assert params["host"] == "localhost"
    assert params["port"] == 5432
    assert params["dbname"] == "ecommerce_db"


def test_masked_params(db_env: None) -> None:
    assert db_config.masked_params()["password"] == "******"


def test_get_connection(db_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []
    monkeypatch.setattr(db_config.psycopg2, "connect", lambda **kwargs: calls.append(kwargs) or "conn")

    assert db_config.get_connection() == "conn"
    assert calls[0]["host"] == "db.internal"
    assert calls[0]["port"] == 6543
